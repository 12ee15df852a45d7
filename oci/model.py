import collections.abc
import dataclasses
import enum
import functools
import json
import typing
import urllib.parse

import dacite

import oci.util

OCI_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'

MANIFEST_LIST_MIMES = (
    DOCKER_MANIFEST_LIST_MIME,
    OCI_IMAGE_INDEX_MIME,
)


class OciError(Exception):
    pass


class TransportError(OciError):
    '''
    raised if a manifest or blob could not be retrieved, either because of a network error, or
    because the registry answered with a non-2xx status code
    '''
    def __init__(self, msg: str, url: str=None, status_code: int=None):
        super().__init__(msg)
        self.url = url
        self.status_code = status_code


class ParseError(OciError, ValueError):
    pass


class PushError(OciError):
    def __init__(self, msg: str, failed: dict[str, str]=None):
        super().__init__(msg)
        # {digest: reason}
        self.failed = failed or {}


class DigestMismatchError(OciError):
    pass


class FilesystemError(OciError, OSError):
    '''
    raised if a directory could not be created, or a file could not be read or written
    '''
    pass


class OciTagType(enum.Enum):
    SYMBOLIC = 'symbolic'
    DIGEST = 'digest'
    NO_TAG = 'no_tag'


class OciImageReference:
    '''
    a parsed image reference ("pull-string"), e.g.

        registry.example.org/some/namespace/name:tag
        registry.example.org/some/namespace/name@sha256:<hex>

    instances are immutable; references w/o registry-host are normalised the way docker-cli
    does it (see `oci.util.normalise_image_reference`).
    '''
    @staticmethod
    def to_image_ref(
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            return image_reference
        else:
            return OciImageReference(
                image_reference=image_reference,
                normalise=normalise,
            )

    def __init__(
        self,
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            self._orig_image_reference = image_reference._orig_image_reference
        elif isinstance(image_reference, str):
            self._orig_image_reference = image_reference
        else:
            raise ValueError(image_reference)
        self._normalise = normalise

    @property
    @functools.cache
    def normalised_image_reference(self) -> str:
        return oci.util.normalise_image_reference(self._orig_image_reference)

    @property
    @functools.cache
    def netloc(self) -> str:
        return self.urlparsed.netloc

    @property
    def registry(self) -> str:
        return self.netloc

    @property
    @functools.cache
    def ref_without_tag(self) -> str:
        '''
        returns the (normalised) image reference w/o the tag or digest tag.
        '''
        p = self.urlparsed
        name = p.netloc + p.path.rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @property
    @functools.cache
    def name(self) -> str:
        '''
        returns the (normalised) image name (omitting api-prefix and tag)
        '''
        p = self.urlparsed
        name = p.path[1:].rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @property
    def namespace(self) -> str:
        '''
        all path-segments of the image name except for the last one (empty if there is none)
        '''
        if not '/' in self.name:
            return ''
        return self.name.rsplit('/', 1)[0]

    @property
    def repository(self) -> str:
        return self.name.rsplit('/', 1)[-1]

    @property
    @functools.cache
    def has_tag(self):
        return not self.tag_type is OciTagType.NO_TAG

    @property
    @functools.cache
    def tag(self) -> str:
        p = self.urlparsed

        if '@' in p.path:
            return p.path.rsplit('@', 1)[-1]
        elif ':' in p.path:
            return p.path.rsplit(':', 1)[-1]
        else:
            raise ValueError(f'no tag found for {str(self)}')

    @property
    def version(self) -> str:
        '''
        symbolic tag or digest (whatever the reference was created with)
        '''
        return self.tag

    @property
    @functools.cache
    def tag_type(self) -> OciTagType:
        p = self.urlparsed

        if '@' in p.path:
            return OciTagType.DIGEST
        elif ':' in p.path:
            return OciTagType.SYMBOLIC
        else:
            return OciTagType.NO_TAG

    @property
    @functools.cache
    def urlparsed(self) -> urllib.parse.ParseResult:
        if not '://' in (img_ref := str(self)) and not img_ref.startswith('/'):
            return urllib.parse.urlparse(f'https://{img_ref}')
        return urllib.parse.urlparse(img_ref)

    def with_tag(self, tag: str) -> 'OciImageReference':
        if 'sha256' in tag and not '@' in tag:
            image_ref = f'{self.ref_without_tag}@{tag}'
        else:
            image_ref = f'{self.ref_without_tag}:{tag}'

        return OciImageReference(
            image_reference=image_ref,
            normalise=self._normalise,
        )

    def __str__(self) -> str:
        if self._normalise:
            return self.normalised_image_reference
        return self._orig_image_reference

    def __repr__(self) -> str:
        return f'OciImageReference({str(self)})'

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciImageReference):
            return False

        if self._orig_image_reference == other._orig_image_reference:
            return True

        return oci.util.normalise_image_reference(self._orig_image_reference) == \
               oci.util.normalise_image_reference(other._orig_image_reference)

    def __hash__(self):
        return hash((self._orig_image_reference,))


@dataclasses.dataclass(kw_only=True)
class OciBlobRef:
    digest: str
    mediaType: str
    size: int
    annotations: dict | None = None

    def as_dict(self) -> dict:
        raw = dataclasses.asdict(self)
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw

    def __hash__(self):
        annotations = tuple(sorted(self.annotations.items())) if self.annotations else ()
        return hash((self.digest, self.size, self.mediaType, annotations))

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciBlobRef):
            return False

        other: OciBlobRef

        if not self.digest == other.digest:
            return False

        if not self.mediaType == other.mediaType:
            return False

        if not self.size == other.size:
            return False

        if not self.annotations == other.annotations:
            return False

        return True


@dataclasses.dataclass
class OciImageManifest:
    config: OciBlobRef
    layers: collections.abc.Sequence[OciBlobRef]
    mediaType: str = OCI_MANIFEST_SCHEMA_V2_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)

    def as_dict(self) -> dict:
        def layer_to_dict(layer):
            if isinstance(layer, dict):
                return layer
            else:
                return layer.as_dict()

        raw = {
            'config': self.config.as_dict(),
            'layers': [layer_to_dict(layer) for layer in self.layers],
            'mediaType': self.mediaType,
            'schemaVersion': self.schemaVersion,
        }
        # registries reject nulls; empty annotations are omitted entirely
        if self.annotations:
            raw['annotations'] = self.annotations

        return raw

    def blobs(self) -> collections.abc.Generator[OciBlobRef, None, None]:
        yield self.config
        yield from self.layers


@dataclasses.dataclass
class OciBlobRefV1:
    blobSum: str


@dataclasses.dataclass
class OciImageManifestV1:
    '''
    defines mirroring-relevant parts of the (deprecated) oci-manifest-schema version 1

    some registries still serve index-images in this format; blob-sizes and mimetypes are not
    known for those (and not needed for mirroring to disk)
    '''
    fsLayers: list[OciBlobRefV1]
    name: str | None = None
    tag: str | None = None
    architecture: str | None = None
    history: list[dict] = dataclasses.field(default_factory=list) # don't care about details
    signatures: list[dict] = dataclasses.field(default_factory=list) # don't care about details
    schemaVersion: int = 1


@dataclasses.dataclass(frozen=True)
class OciPlatform:
    '''
    https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list
    '''
    architecture: str
    os: str # could also be a dict (see spec)
    variant: str | None = None

    def as_dict(self) -> dict:
        # need custom serialisation, because some OCI registries do not like null-values
        # (must be absent instead)
        raw = dataclasses.asdict(self)

        if not self.variant:
            del raw['variant']

        return raw

    def __eq__(self, other):
        if not isinstance(other, OciPlatform):
            return False

        if not self.architecture == other.architecture:
            return False

        if not self.os == other.os:
            return False

        return True


@dataclasses.dataclass
class OciImageManifestListEntry(OciBlobRef):
    platform: OciPlatform | None = None
    urls: list[str] | None = None

    def as_dict(self) -> dict:
        raw = OciBlobRef.as_dict(self)
        # platform is an optional attribute according to oci spec
        # => only include in the output if set
        if self.platform:
            raw['platform'] = self.platform.as_dict()
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw


@dataclasses.dataclass
class OciImageManifestList:
    '''Covers both Docker Manifest List
        (https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list)
        and OCI Image Index
        (https://github.com/opencontainers/image-spec/blob/main/image-index.md)
    '''
    manifests: list[OciImageManifestListEntry]
    mediaType: str = OCI_IMAGE_INDEX_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)

    def as_dict(self):
        raw = {
            'manifests': [le.as_dict() for le in self.manifests],
            'mediaType': self.mediaType,
            'schemaVersion': self.schemaVersion,
        }

        if self.mediaType == OCI_IMAGE_INDEX_MIME:
            raw['annotations'] = self.annotations

        return raw


Manifest = OciImageManifest | OciImageManifestV1 | OciImageManifestList


@dataclasses.dataclass(frozen=True)
class FsLayer:
    '''
    a blob that is to be fetched into the blob-store

    identity is defined by `digest` only; `original_ref` (an image-reference w/o tag) is only
    used to construct the url to fetch the blob from, and does not take part in comparisons.
    '''
    digest: str
    original_ref: str | None = dataclasses.field(default=None, compare=False)
    size: int | None = dataclasses.field(default=None, compare=False)

    @property
    def hexdigest(self) -> str:
        return oci.util.hexdigest(self.digest)


def as_manifest(
    manifest: str | bytes | dict | Manifest,
) -> Manifest:
    '''
    returns a deserialised equivalent of the passed-in manifest. For convenience, if passed-in
    manifest is already deserialised, the passed value is returned unchanged.

    raises ParseError if the passed value cannot be parsed into any of the known manifest types.
    '''
    if isinstance(manifest, (OciImageManifest, OciImageManifestV1, OciImageManifestList)):
        return manifest

    try:
        if isinstance(manifest, (str, bytes)):
            manifest = json.loads(manifest)
    except ValueError as ve:
        raise ParseError(f'manifest is not valid json: {ve}') from ve

    if not isinstance(manifest, dict):
        raise ParseError(f'expected a json-object, got: {type(manifest)=}')

    media_type = manifest.get('mediaType')
    schema_version = manifest.get('schemaVersion')

    if schema_version == 1:
        data_class = OciImageManifestV1
    elif media_type in MANIFEST_LIST_MIMES:
        data_class = OciImageManifestList
    elif media_type in (
        DOCKER_MANIFEST_SCHEMA_V2_MIME,
        OCI_MANIFEST_SCHEMA_V2_MIME,
    ):
        data_class = OciImageManifest
    elif media_type is None and 'manifests' in manifest:
        # mediaType is optional for oci-image-indices
        data_class = OciImageManifestList
    elif media_type is None and 'layers' in manifest:
        data_class = OciImageManifest
    else:
        raise ParseError(f'unknown manifest-type: {media_type=} {schema_version=}')

    try:
        return dacite.from_dict(
            data_class=data_class,
            data=manifest,
        )
    except dacite.DaciteError as de:
        raise ParseError(f'could not parse manifest as {data_class.__name__}: {de}') from de


def is_manifest_list(manifest: Manifest) -> bool:
    return isinstance(manifest, OciImageManifestList)


def fs_layers(
    manifest: OciImageManifest | OciImageManifestV1,
    original_ref: str | None=None,
) -> list[FsLayer]:
    '''
    returns all blobs referenced by the given (single-image) manifest (cfg-blob first, if any)
    '''
    if isinstance(manifest, OciImageManifestV1):
        return [
            FsLayer(digest=layer.blobSum, original_ref=original_ref)
            for layer in manifest.fsLayers
        ]

    if isinstance(manifest, OciImageManifest):
        return [
            FsLayer(digest=blob.digest, original_ref=original_ref, size=blob.size)
            for blob in manifest.blobs()
        ]

    raise ValueError(f'not a single-image manifest: {type(manifest)=}')
