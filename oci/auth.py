import base64
import collections.abc
import dataclasses
import enum
import json
import logging
import os

logger = logging.getLogger(__name__)


class Privileges(enum.Enum):
    READONLY = 'readonly'
    READWRITE = 'readwrite'


@dataclasses.dataclass(frozen=True)
class OciCredentials:
    pass


@dataclasses.dataclass(frozen=True)
class OciBasicAuthCredentials(OciCredentials):
    username: str
    password: str


# typehint-alias
image_reference = str
credentials_lookup = collections.abc.Callable[[image_reference, Privileges, bool], OciCredentials]


def default_auth_file() -> str | None:
    '''
    returns the first existing auth-file from the well-known locations (podman's auth.json below
    $XDG_RUNTIME_DIR, then docker's config.json below $HOME), or None if there is none
    '''
    candidates = []
    if (runtime_dir := os.environ.get('XDG_RUNTIME_DIR')):
        candidates.append(os.path.join(runtime_dir, 'containers', 'auth.json'))
    candidates.append(os.path.join(os.environ.get('HOME', ''), '.docker', 'config.json'))

    for candidate in candidates:
        if os.path.isfile(candidate):
            return candidate

    return None


def docker_credentials_lookup(
    docker_cfg: str | None=None,
    absent_ok: bool=False,
) -> credentials_lookup:
    '''
    returns a credentials-lookup backed by an auth-file in docker's (or podman's) format:

        {"auths": {"<registry-host>": {"auth": "<base64(user:password)>"}}}

    Such auth-files only allow configuring credentials per hostname. If no path is
    passed, the well-known default locations are searched (see `default_auth_file`).

    if no auth-file is found, raises RuntimeError, unless absent_ok is truthy, in which case the
    returned lookup will never return any credentials (which might still be useful for readonly
    operations that for many registries allow anonymous access).

    privileges parameter is ignored (auth-files do not distinguish by privileges)
    '''
    if not docker_cfg:
        docker_cfg = default_auth_file()

    if not docker_cfg or not os.path.isfile(docker_cfg):
        if not absent_ok:
            raise RuntimeError(f'not an existing file: {docker_cfg=}')

        def find_nothing_lookup(
            image_reference: str,
            privileges: Privileges=Privileges.READONLY,
            absent_ok: bool=False,
        ):
            if not absent_ok:
                raise ValueError(f'no auth-cfg found in {docker_cfg=} for {image_reference=}')
            return None

        return find_nothing_lookup

    def docker_auth_lookup(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        # re-read auth-file to reflect fs-updates
        with open(docker_cfg) as f:
            docker_auth = json.load(f)
            auths = docker_auth.get('auths', None)

        if not auths:
            # auth-file might be empty - do not handle as an error; however, we can never serve
            # anything useful
            if not absent_ok:
                raise ValueError(f'no auth-cfg found in {docker_cfg=} for {image_reference=}')
            return None

        if image_reference.startswith('/'):
            # if it is a relative reference, we have no means to find appropriate cfg.
            if not absent_ok:
                raise ValueError(f'no auth-cfg found in {docker_cfg=} for {image_reference=}')
            return None

        # ignore ports - match cfg only by hostname
        image_netloc = image_reference.split('/')[0]
        image_host = image_netloc.split(':')[0]

        for netloc, auth_dict in auths.items():
            host = netloc.removeprefix('https://').split('/')[0].split(':')[0]
            if host == image_host:
                break
        else:
            if not absent_ok:
                raise ValueError(
                    f'no matching auth-cfg found in {docker_cfg=} for {image_reference=}'
                )
            return None # no matching cfg was found

        # auth-files only have a single value `auth` (or so we hope / assume)
        auth = auth_dict.get('auth', None)
        if not auth:
            raise ValueError(f'did not find expected attr `auth` in {docker_cfg=} for {image_host=}')

        auth = base64.b64decode(auth).decode('utf-8')
        username, passwd = auth.split(':', 1)

        logger.debug(f'using credentials from {docker_cfg=} for {image_host=}')

        return OciBasicAuthCredentials(
            username=username,
            password=passwd,
        )

    return docker_auth_lookup
