import base64
import concurrent.futures
import dataclasses
import datetime
import enum
import json
import logging
import threading
import typing
import urllib.parse

import dacite
import dateutil.parser
import requests
import requests.auth
import www_authenticate

import http_requests
import oci.auth as oa
import oci.blobstore
import oci.model as om
import oci.util

urljoin = oci.util.urljoin

logger = logging.getLogger(__name__)

oci_request_logger = logging.getLogger('oci.client.request_logger')
oci_request_logger.setLevel(logging.DEBUG)

DEFAULT_MAX_WORKERS = 8


def _append_b64_padding_if_missing(b64_str: str):
    if b64_str[-1] == '=':
        return b64_str

    if (mod4 := len(b64_str) % 4) == 2:
        return b64_str + '=' * 2
    elif mod4 == 3:
        return b64_str + '='
    elif mod4 == 0:
        return b64_str
    else:
        raise ValueError('this is a bug')


class AuthMethod(enum.Enum):
    BEARER = 'bearer'
    BASIC = 'basic'


@dataclasses.dataclass
class OauthToken:
    token: str
    scope: str
    expires_in: int = None
    issued_at: str = None

    def valid(self):
        issued_at = dateutil.parser.isoparse(self.issued_at)
        # pessimistically deduct 30s, to be on the safe side
        expiry_date = issued_at + datetime.timedelta(seconds=self.expires_in - 30)

        now = datetime.datetime.now(tz=datetime.timezone.utc)
        return now < expiry_date

    def __post_init__(self):
        if not self.issued_at:
            self.issued_at = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        if not self.expires_in:
            # check if format seems to be jwt
            if self.token.count('.') >= 2:
                payload = self.token.split('.')[1]
                # add padding (JWT by convention has unpadded base64)
                payload = _append_b64_padding_if_missing(b64_str=payload)

                parsed = json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))

                exp = parsed['exp']
                iat = parsed['iat']

                self.expires_in = exp - iat
                self.issued_at = datetime.datetime.fromtimestamp(iat, tz=datetime.timezone.utc)\
                    .isoformat()
            else:
                # hard-code a value in the future since it is not given
                self.expires_in = datetime.timedelta(minutes=10).seconds


class OauthTokenCache:
    def __init__(self):
        self.tokens = {} # {scope: token}
        self.auth_methods = {} # {netloc: method}
        self._token_access_lock = threading.Lock()

    def token(self, scope: str) -> OauthToken | None:
        with self._token_access_lock:
            # purge expired tokens
            self.tokens = {s:t for s,t in self.tokens.items() if t.valid()}

            return self.tokens.get(scope)

    def set_token(self, token: OauthToken):
        if not token.valid():
            raise ValueError(f'token expired: {token=}')

        with self._token_access_lock:
            self.tokens[token.scope] = token

    def set_auth_method(self, netloc: str, auth_method: AuthMethod):
        self.auth_methods[netloc] = auth_method

    def auth_method(self, netloc: str) -> AuthMethod | None:
        return self.auth_methods.get(netloc)


def base_api_url(
    image_reference: typing.Union[str, om.OciImageReference],
) -> str:
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    base_url = f'https://{image_reference.netloc}'

    return urljoin(base_url, 'v2') + '/'


class OciRoutes:
    '''
    url-routes for pulling from the registry an image-reference points to
    '''
    def __init__(
        self,
        base_api_url_lookup: typing.Callable[[str], str]=base_api_url,
    ):
        self.base_api_url_lookup = base_api_url_lookup

    def artifact_base_url(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
    ) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        return urljoin(
            self.base_api_url_lookup(image_reference=str(image_reference)),
            image_reference.name,
        )

    def blobs_url(self, image_reference: typing.Union[str, om.OciImageReference]) -> str:
        '''
        returns the blobs-url (w/ trailing slash, so digests may be appended)
        '''
        return urljoin(
            self.artifact_base_url(image_reference),
            'blobs',
        ) + '/'

    def blob_url(self, image_reference: typing.Union[str, om.OciImageReference], digest: str):
        return self.blobs_url(image_reference=image_reference) + digest

    def manifest_url(self, image_reference: typing.Union[str, om.OciImageReference]) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        if not image_reference.has_tag:
            raise ValueError(f'{image_reference=} does not seem to contain a tag')

        return urljoin(
            self.artifact_base_url(image_reference=image_reference),
            'manifests',
            image_reference.tag,
        )


class DestinationRoutes:
    '''
    url-routes for pushing to a destination-registry.

    destination is expected in the form `docker://<host>[:<port>]/<namespace>`; the pushed
    repository is `<namespace>/<sub_component>`.
    '''
    def __init__(
        self,
        destination: str,
        sub_component: str,
        scheme: str='https',
    ):
        if not '://' in destination:
            destination = f'docker://{destination}'

        parsed = urllib.parse.urlparse(destination)
        if parsed.scheme in ('http', 'https'):
            scheme = parsed.scheme
        elif parsed.scheme != 'docker':
            raise ValueError(f'unsupported scheme for {destination=}')

        if not parsed.netloc:
            raise ValueError(f'no registry-host in {destination=}')

        self.registry = parsed.netloc
        self.namespace = parsed.path.strip('/')
        self.sub_component = sub_component.strip('/')
        self.scheme = scheme

    @property
    def repository(self) -> str:
        return '/'.join(p for p in (self.namespace, self.sub_component) if p)

    @property
    def base_url(self) -> str:
        return urljoin(
            f'{self.scheme}://{self.registry}',
            'v2',
            self.repository,
        )

    def uploads_url(self) -> str:
        return urljoin(self.base_url, 'blobs', 'uploads') + '/'

    def blob_url(self, digest: str) -> str:
        return urljoin(self.base_url, 'blobs', digest)

    def manifest_url(self, reference: str) -> str:
        return urljoin(self.base_url, 'manifests', reference)


def _scope(image_reference: typing.Union[str, om.OciImageReference], action: str):
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    image_name = image_reference.name
    # action = 'pull' # | pull,push | catalog
    scope = f'repository:{image_name}:{action}'

    return scope


class QueuedDigests:
    '''
    thread-safe set of digests that were already scheduled for retrieval during the current
    mirroring run. Shared (by reference) by all callers of `fetch_blobs` to ensure no digest is
    fetched more than once.
    '''
    def __init__(self):
        self._digests = set()
        self._lock = threading.Lock()

    def claim(self, digest: str) -> bool:
        '''
        atomically adds the given digest; returns `False` if it had already been claimed
        '''
        hexdigest = oci.util.hexdigest(digest)
        with self._lock:
            if hexdigest in self._digests:
                return False
            self._digests.add(hexdigest)
            return True

    def release(self, digest: str):
        with self._lock:
            self._digests.discard(oci.util.hexdigest(digest))

    def __contains__(self, digest: str) -> bool:
        with self._lock:
            return oci.util.hexdigest(digest) in self._digests

    def __len__(self) -> int:
        with self._lock:
            return len(self._digests)


@dataclasses.dataclass
class BlobFetchResult:
    '''
    per-digest outcome of a `fetch_blobs` batch

    fetched: retrieved and written to blob-store
    present: already present in blob-store (not fetched)
    skipped: claimed by another batch during the same run (not fetched)
    failed: {digest: reason}
    '''
    fetched: list[str] = dataclasses.field(default_factory=list)
    present: list[str] = dataclasses.field(default_factory=list)
    skipped: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclasses.dataclass
class PushResult:
    manifest_url: str
    manifest_digest: str
    uploaded: list[str] = dataclasses.field(default_factory=list)
    existing: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class SubManifest:
    entry: om.OciImageManifestListEntry
    raw: bytes
    manifest: om.OciImageManifest | om.OciImageManifestV1

    @property
    def file_name(self) -> str:
        if not (platform := self.entry.platform):
            return f'manifest-{oci.util.hexdigest(self.entry.digest)[:12]}.json'

        if platform.variant:
            return f'manifest-{platform.architecture}-{platform.variant}.json'
        return f'manifest-{platform.architecture}.json'


@dataclasses.dataclass
class ResolvedImage:
    '''
    a retrieved image-manifest; if it is a manifest-list, `sub_manifests` holds the retrieved
    per-platform manifests
    '''
    image_reference: om.OciImageReference
    raw: bytes
    manifest: om.Manifest
    sub_manifests: list[SubManifest] = dataclasses.field(default_factory=list)

    @property
    def is_list(self) -> bool:
        return om.is_manifest_list(self.manifest)

    def layers(self) -> list[om.FsLayer]:
        '''
        returns the union of all blobs (layers and cfg-blobs) referenced by this image (or by
        all of its per-platform manifests)
        '''
        original_ref = self.image_reference.ref_without_tag

        if self.is_list:
            manifests = [sm.manifest for sm in self.sub_manifests]
        else:
            manifests = [self.manifest]

        layers = {}
        for manifest in manifests:
            for layer in om.fs_layers(manifest, original_ref=original_ref):
                layers.setdefault(layer.hexdigest, layer)

        return list(layers.values())


class RegistryInterface(typing.Protocol):
    '''
    capabilities required for mirroring; implemented by `Client` (and by test-doubles)
    '''
    def fetch_manifest(
        self,
        url: str,
        token: str | None,
        accept: str=om.OCI_MANIFEST_SCHEMA_V2_MIME,
    ) -> bytes:
        ...

    def fetch_blobs(
        self,
        blob_store: oci.blobstore.BlobStore,
        base_url: str,
        token: str | None,
        layers: typing.Iterable[om.FsLayer],
        queued: QueuedDigests | None=None,
    ) -> BlobFetchResult:
        ...

    def push_image(
        self,
        blob_store: oci.blobstore.BlobStore,
        sub_component: str,
        dest_url: str,
        manifest: om.OciImageManifest | bytes,
        token: str | None=None,
    ) -> PushResult:
        ...


def resolve_image(
    registry: RegistryInterface,
    image_reference: typing.Union[str, om.OciImageReference],
    token: str | None,
    routes: OciRoutes=OciRoutes(),
) -> ResolvedImage:
    '''
    retrieves the manifest for the given image-reference. If it is a manifest-list (docker
    manifest-list or oci image-index), all per-platform manifests are retrieved as well (by
    digest).

    raises TransportError if any manifest could not be retrieved, and ParseError if any manifest
    could not be parsed.
    '''
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    raw = registry.fetch_manifest(
        url=routes.manifest_url(image_reference),
        token=token,
    )
    manifest = om.as_manifest(raw)

    if not om.is_manifest_list(manifest):
        return ResolvedImage(
            image_reference=image_reference,
            raw=raw,
            manifest=manifest,
        )

    sub_manifests = []
    for entry in manifest.manifests:
        sub_reference = image_reference.with_tag(entry.digest)
        logger.debug(f'retrieving sub-manifest {sub_reference=} {entry.platform=}')

        sub_raw = registry.fetch_manifest(
            url=routes.manifest_url(sub_reference),
            token=token,
        )
        sub_manifest = om.as_manifest(sub_raw)

        if om.is_manifest_list(sub_manifest):
            raise om.ParseError(f'nested manifest-lists are not supported: {sub_reference=}')

        sub_manifests.append(SubManifest(
            entry=entry,
            raw=sub_raw,
            manifest=sub_manifest,
        ))

    return ResolvedImage(
        image_reference=image_reference,
        raw=raw,
        manifest=manifest,
        sub_manifests=sub_manifests,
    )


class Client:
    def __init__(
        self,
        credentials_lookup: oa.credentials_lookup=None,
        routes: OciRoutes=OciRoutes(),
        disable_tls_validation=False,
        timeout_seconds: int=None,
        session: requests.Session=None,
        max_workers: int=DEFAULT_MAX_WORKERS,
        destination_scheme: str='https',
        verify_digests: bool=False,
    ):
        self.credentials_lookup = credentials_lookup
        self.token_cache = OauthTokenCache()
        if not session:
            self.session = http_requests.mount_default_adapter(
                session=requests.Session(),
                max_pool_size=max(max_workers, 32),
            )
        else:
            self.session = session
        self.routes = routes
        self.disable_tls_validation = disable_tls_validation
        self.max_workers = max_workers
        self.destination_scheme = destination_scheme
        self.verify_digests = verify_digests

        if timeout_seconds:
            timeout_seconds = int(timeout_seconds)
        self.timeout_seconds = timeout_seconds

    def _lookup_credentials(
        self,
        image_reference: str,
        privileges: oa.Privileges,
    ) -> oa.OciBasicAuthCredentials | None:
        if not self.credentials_lookup:
            return None

        return self.credentials_lookup(
            image_reference=image_reference,
            privileges=privileges,
            absent_ok=True,
        )

    def bearer_token(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        action: str='pull',
    ) -> str | None:
        '''
        returns a bearer-token for the given image-reference and action, retrieved from the
        token-endpoint the registry announces in its `WWW-Authenticate`-challenge.

        returns `None` if the registry does not require a bearer-token (in which case requests
        are sent using basic-auth, if credentials are available).
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        scope = _scope(image_reference=image_reference, action=action)
        netloc = image_reference.netloc

        cached_auth_method = self.token_cache.auth_method(netloc=netloc)
        if cached_auth_method is AuthMethod.BASIC:
            return None
        if cached_auth_method is AuthMethod.BEARER and (token := self.token_cache.token(scope)):
            return token.token

        if 'push' in action:
            privileges = oa.Privileges.READWRITE
        else:
            privileges = oa.Privileges.READONLY

        oci_creds = self._lookup_credentials(
            image_reference=str(image_reference),
            privileges=privileges,
        )

        if not oci_creds:
            logger.warning(f'no credentials for {str(image_reference)=} - attempting anonymous-auth')

        url = base_api_url(image_reference=image_reference)
        try:
            res = self.session.get(
                url=url,
                verify=not self.disable_tls_validation,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as re:
            raise om.TransportError(f'could not reach {url=}: {re}', url=url) from re

        challenge_header = res.headers.get('www-authenticate')
        auth_challenge = www_authenticate.parse(challenge_header) if challenge_header else {}

        # fallback to basic-auth if endpoints does not state what it wants
        if 'basic' in auth_challenge or not auth_challenge:
            self.token_cache.set_auth_method(
                netloc=netloc,
                auth_method=AuthMethod.BASIC,
            )
            return None # no additional preliminary steps required for basic-auth
        elif 'bearer' in auth_challenge:
            bearer = auth_challenge['bearer']
            self.token_cache.set_auth_method(
                netloc=netloc,
                auth_method=AuthMethod.BEARER,
            )
        else:
            raise om.TransportError(f'did not understand {auth_challenge=}', url=url)

        query = {'scope': scope}
        if (service := bearer.get('service')):
            query['service'] = service
        realm = bearer['realm'] + '?' + urllib.parse.urlencode(query)

        if oci_creds:
            auth = requests.auth.HTTPBasicAuth(
              username=oci_creds.username,
              password=oci_creds.password,
            )
        else:
            auth = None

        try:
            res = self.session.get(
                url=realm,
                verify=not self.disable_tls_validation,
                auth=auth,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as re:
            raise om.TransportError(f'could not reach {realm=}: {re}', url=realm) from re

        if not res.ok:
            logger.warning(
                f'rq against {realm=} failed: {res.status_code=} {res.reason=} {res.content=}'
            )
            raise om.TransportError(
                f'could not retrieve token from {realm=}',
                url=realm,
                status_code=res.status_code,
            )

        token_dict = res.json()
        # some token-servers (e.g. sso.redhat.com) only return `access_token`
        if not 'token' in token_dict and 'access_token' in token_dict:
            token_dict['token'] = token_dict['access_token']
        token_dict['scope'] = scope

        token = dacite.from_dict(
            data=token_dict,
            data_class=OauthToken,
        )

        self.token_cache.set_token(token)

        return token.token

    def _request(
        self,
        url: str,
        token: str | None,
        method: str='GET',
        headers: dict=None,
        warn_if_not_ok=True,
        **kwargs,
    ) -> requests.Response:
        '''
        sends a request (w/ bearer-token, if passed); raises TransportError if no response
        was received. It is the caller's responsibility to check the response's status.
        '''
        if not 'timeout' in kwargs and self.timeout_seconds:
            kwargs['timeout'] = self.timeout_seconds

        headers = headers or {}
        headers['User-Agent'] = 'image-mirror (python3)'
        auth = None

        if token:
            headers = {
              'Authorization': f'Bearer {token}',
              **headers,
            }
        else:
            netloc = urllib.parse.urlparse(url).netloc
            if self.token_cache.auth_method(netloc=netloc) is AuthMethod.BASIC:
                if method in ('GET', 'HEAD'):
                    privileges = oa.Privileges.READONLY
                else:
                    privileges = oa.Privileges.READWRITE

                if oci_creds := self._lookup_credentials(
                    image_reference=netloc,
                    privileges=privileges,
                ):
                    auth = oci_creds.username, oci_creds.password

        if self.disable_tls_validation:
            kwargs['verify'] = False

        oci_request_logger.debug(
            msg=f'oci request sent {method=} {url=}',
            extra={
                'method': method,
                'url': url,
                'headers': {k: v for k, v in headers.items() if k != 'Authorization'},
            },
        )

        try:
            res = self.session.request(
                method=method,
                url=url,
                auth=auth,
                headers=headers,
                **kwargs,
            )
        except requests.exceptions.RequestException as re:
            raise om.TransportError(f'{method} {url=} failed: {re}', url=url) from re

        if not res.ok and warn_if_not_ok:
            logger.warning(
                f'rq against {url=} failed {res.status_code=} {res.reason=} {method=}'
            )

        return res

    def fetch_manifest(
        self,
        url: str,
        token: str | None,
        accept: str=om.OCI_MANIFEST_SCHEMA_V2_MIME,
    ) -> bytes:
        '''
        returns the (unparsed) manifest retrieved from the given manifest-url. Callers may use
        `oci.model.as_manifest` to parse it into either a single-image-manifest, or a
        manifest-list.

        raises TransportError on network errors, or if the registry did not respond w/ 2xx
        '''
        res = self._request(
            url=url,
            token=token,
            headers={
                'Accept': accept,
                'Content-Type': 'application/json',
            },
        )

        if not res.ok:
            raise om.TransportError(
                f'could not retrieve manifest from {url=}: {res.status_code=} {res.reason=}',
                url=url,
                status_code=res.status_code,
            )

        return res.content

    def _fetch_blob(
        self,
        blob_store: oci.blobstore.BlobStore,
        url: str,
        layer: om.FsLayer,
        token: str | None,
    ):
        res = self._request(
            url=url,
            token=token,
            stream=True,
        )

        with res:
            if not res.ok:
                raise om.TransportError(
                    f'could not retrieve blob from {url=}: {res.status_code=} {res.reason=}',
                    url=url,
                    status_code=res.status_code,
                )

            blob_store.write(
                digest=layer.digest,
                data=res.iter_content(chunk_size=1024 * 1024),
                verify=self.verify_digests,
            )

        logger.info(f'writing blob {layer.hexdigest}')

    def fetch_blobs(
        self,
        blob_store: oci.blobstore.BlobStore,
        base_url: str,
        token: str | None,
        layers: typing.Iterable[om.FsLayer],
        queued: QueuedDigests | None=None,
    ) -> BlobFetchResult:
        '''
        retrieves the given blobs into the given blob-store, using up to `max_workers` parallel
        requests. Returns after all retrievals have finished (or failed).

        blobs are deduplicated by digest; blobs already present in blob-store, or already
        claimed in `queued` (shared across calls during one mirroring run) are not retrieved.

        blobs are retrieved from `<base_url><digest>`; if `base_url` is empty, the blobs-url is
        derived from each layer's `original_ref`.

        a failure to retrieve a blob does not abort retrieval of other blobs; failures are
        logged, and reported in the returned result.
        '''
        result = BlobFetchResult()
        pending = []
        seen = set()

        for layer in layers:
            if layer.hexdigest in seen:
                continue
            seen.add(layer.hexdigest)

            if blob_store.exists(layer.digest):
                result.present.append(layer.digest)
                continue

            if queued is not None and not queued.claim(layer.digest):
                result.skipped.append(layer.digest)
                continue

            pending.append(layer)

        def blob_url(layer: om.FsLayer):
            if base_url:
                return base_url + layer.digest
            if not layer.original_ref:
                raise ValueError(f'neither base-url nor original-ref for {layer.digest=}')
            return self.routes.blob_url(
                image_reference=layer.original_ref,
                digest=layer.digest,
            )

        def fetch(layer: om.FsLayer):
            self._fetch_blob(
                blob_store=blob_store,
                url=blob_url(layer),
                layer=layer,
                token=token,
            )
            return layer

        logger.debug(f'downloading {len(pending)} blob(s) - {len(result.present)} already present')

        if not pending:
            return result

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            tasks = {
                executor.submit(fetch, layer): layer
                for layer in pending
            }

            for task in concurrent.futures.as_completed(tasks):
                layer = tasks[task]
                try:
                    task.result()
                    result.fetched.append(layer.digest)
                except (om.OciError, ValueError) as e:
                    logger.error(f'downloading blob {layer.digest} failed: {e}')
                    result.failed[layer.digest] = str(e)
                    if queued is not None:
                        # allow other batches to retry
                        queued.release(layer.digest)

        return result

    def _push_blob(
        self,
        blob_store: oci.blobstore.BlobStore,
        routes: DestinationRoutes,
        digest: str,
        token: str | None,
    ) -> bool:
        '''
        pushes the given blob (read from blob-store) unless it already exists in the destination.
        returns `True` if the blob was uploaded, `False` if it already existed.

        see https://distribution.github.io/distribution/spec/api/ for the upload-flow
        '''
        uploads_url = routes.uploads_url()
        res = self._request(
            url=uploads_url,
            token=token,
            method='POST',
            headers={
                'Accept': '*/*',
                'Content-Length': '0',
            },
        )
        if not res.status_code == 202:
            raise om.PushError(f'initiating upload against {uploads_url=} failed: {res.status_code=}')

        if not (upload_url := res.headers.get('Location')):
            raise om.PushError(f'no Location-header in response from {uploads_url=}')

        # returned url _may_ be relative
        if upload_url.startswith('/'):
            parsed_url = urllib.parse.urlparse(res.url or uploads_url)
            upload_url = f'{parsed_url.scheme}://{parsed_url.netloc}{upload_url}'

        blob_url = routes.blob_url(digest)
        res = self._request(
            url=blob_url,
            token=token,
            method='HEAD',
            headers={
                'Accept': '*/*',
            },
            warn_if_not_ok=False,
        )
        if res.status_code == 200:
            logger.info(f'skipping blob upload {digest=} - already exists')
            return False

        if '?' in upload_url:
            prefix = '&'
        else:
            prefix = '?'

        upload_url += prefix + urllib.parse.urlencode({'digest': digest})
        octets_count = blob_store.size(digest)

        with blob_store.open(digest) as f:
            res = self._request(
                url=upload_url,
                token=token,
                method='PUT',
                headers={
                    'Content-Type': 'application/octet-stream',
                    'Content-Length': str(octets_count),
                },
                data=f,
            )

        if not res.ok:
            raise om.PushError(f'uploading {digest=} failed: {res.status_code=} {res.reason=}')

        if not res.status_code == 201: # spec says it MUST be 201
            logger.warning(f'{res.status_code=} {digest=} - PUT may have failed')

        logger.info(f'uploaded blob {digest=} to {routes.repository}')
        return True

    def push_image(
        self,
        blob_store: oci.blobstore.BlobStore,
        sub_component: str,
        dest_url: str,
        manifest: om.OciImageManifest | bytes,
        token: str | None=None,
    ) -> PushResult:
        '''
        pushes all blobs (layers and cfg-blob) referenced by the given manifest (read from the
        given blob-store), followed by the manifest itself.

        blobs are pushed on a best-effort basis (a failed blob does not prevent pushing the
        remaining ones); however, the manifest is only pushed if all blobs were confirmed to be
        uploaded, or already present. Otherwise, PushError is raised.

        the manifest is pushed w/ a tag derived from its digest (first seven hex-characters).
        '''
        if isinstance(manifest, (bytes, str)):
            raw_manifest = manifest.encode('utf-8') if isinstance(manifest, str) else manifest
            manifest = om.as_manifest(raw_manifest)
        else:
            raw_manifest = json.dumps(manifest.as_dict()).encode('utf-8')

        if not isinstance(manifest, om.OciImageManifest):
            raise om.PushError(f'only single-image manifests can be pushed: {type(manifest)=}')

        routes = DestinationRoutes(
            destination=dest_url,
            sub_component=sub_component,
            scheme=self.destination_scheme,
        )

        uploaded = []
        existing = []
        failed = {}

        for blob in (*manifest.layers, manifest.config):
            try:
                if self._push_blob(
                    blob_store=blob_store,
                    routes=routes,
                    digest=blob.digest,
                    token=token,
                ):
                    uploaded.append(blob.digest)
                else:
                    existing.append(blob.digest)
            except om.OciError as oe:
                logger.error(f'pushing blob {blob.digest} to {routes.repository} failed: {oe}')
                failed[blob.digest] = str(oe)

        if failed:
            raise om.PushError(
                f'{len(failed)} blob(s) could not be pushed to {routes.repository} - '
                'will not push manifest',
                failed=failed,
            )

        manifest_digest = oci.util.sha256_digest(raw_manifest)
        manifest_url = routes.manifest_url(oci.util.hexdigest(manifest_digest)[:7])

        res = self._request(
            url=manifest_url,
            token=token,
            method='PUT',
            headers={
                'Content-Type': manifest.mediaType or om.DOCKER_MANIFEST_SCHEMA_V2_MIME,
                'Content-Length': str(len(raw_manifest)),
            },
            data=raw_manifest,
        )

        if not res.ok:
            logger.warning(f'our manifest was rejected: {res.status_code=} {res.content=}')
            raise om.PushError(f'pushing manifest to {manifest_url=} failed: {res.status_code=}')

        logger.info(f'result for manifest {res.status_code} {sub_component}')

        return PushResult(
            manifest_url=manifest_url,
            manifest_digest=manifest_digest,
            uploaded=uploaded,
            existing=existing,
        )
