'''
builds (incremental) diff-archives from mirrored metadata

a diff-archive is a gzip-compressed tarfile containing:

    metadata/isc.yaml     the image-set-configuration used for mirroring
    blobs/<hex>           all blobs referenced by manifests in touched directories
    <relpath>/...         the touched metadata-directories (relative to the working directory)

extracting a diff-archive into a working directory (and moving `blobs` into the blob-store)
reproduces the mirrored subset.
'''
import datetime
import io
import logging
import os
import tarfile
import time
import typing

import mirror.model as mm
import oci.blobstore
import oci.model as om

logger = logging.getLogger(__name__)

METADATA_MARKERS = (
    mm.Component.OPERATORS.value,
    mm.Component.RELEASE.value,
)
METADATA_FILES = (
    mm.MANIFEST_FILE,
    mm.MANIFEST_LIST_FILE,
)
# not walked when searching metadata-directories
_excluded_dirs = (
    mm.BLOBS_STORE_DIR,
    mm.CACHE_DIR,
)

DATE_FORMAT = '%Y/%m/%d'


def parse_date(date: str) -> datetime.datetime:
    '''
    parses the given date (yyyy/mm/dd) into a (timezone-aware) datetime at midnight UTC
    '''
    try:
        parsed = datetime.datetime.strptime(date, DATE_FORMAT)
    except (TypeError, ValueError) as e:
        raise ValueError(f'expected date in format yyyy/mm/dd, got: {date=}') from e

    return parsed.replace(tzinfo=datetime.timezone.utc)


def creation_time(path: str) -> float:
    '''
    returns the birth-time of the given path, if available on the current platform, and
    falls back to ctime otherwise
    '''
    stat = os.stat(path)
    if (birthtime := getattr(stat, 'st_birthtime', None)):
        return birthtime
    return stat.st_ctime


def _is_metadata_dir(relpath: str, filenames: list[str]) -> bool:
    if not any(marker in relpath for marker in METADATA_MARKERS):
        return False
    return any(name in filenames for name in METADATA_FILES)


def iter_metadata_dirs(workdir: str) -> typing.Generator[str, None, None]:
    for dirpath, dirnames, filenames in os.walk(workdir):
        dirnames[:] = sorted(d for d in dirnames if not d in _excluded_dirs)
        relpath = os.path.relpath(dirpath, workdir)

        if relpath == '.':
            continue

        if _is_metadata_dir(relpath, filenames):
            yield relpath


def metadata_dirs(workdir: str) -> set[str]:
    '''
    returns all metadata-directories (relative to workdir), i.e. directories whose path contains
    `operators` or `release`, and that contain a manifest (or manifest-list)
    '''
    dirs = set(iter_metadata_dirs(workdir))
    logger.debug(f'valid metadata directories {sorted(dirs)}')
    return dirs


def metadata_dirs_by_date(workdir: str, date: str) -> set[str]:
    '''
    like `metadata_dirs`, but only returns directories that were created after the given date
    (yyyy/mm/dd). Raises ValueError if date is malformed.
    '''
    cutoff = parse_date(date).timestamp()
    logger.info(f'date {date} (unix {int(cutoff)})')

    dirs = set()
    for relpath in iter_metadata_dirs(workdir):
        created = creation_time(os.path.join(workdir, relpath))
        if created > cutoff:
            logger.debug(
                f'{relpath} created {time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(created))}'
            )
            dirs.add(relpath)

    return dirs


class SinceLastRun:
    '''
    selects metadata-directories that were added since instantiation (which is expected to
    happen before mirroring)
    '''
    def __init__(self, workdir: str):
        self.workdir = workdir
        self.before = metadata_dirs(workdir)

    def touched(self) -> set[str]:
        return metadata_dirs(self.workdir) - self.before


class SinceDate:
    '''
    selects metadata-directories that were created after the given date (yyyy/mm/dd)
    '''
    def __init__(self, workdir: str, date: str):
        self.workdir = workdir
        self.date = date
        # fail early for malformed dates
        parse_date(date)

    def touched(self) -> set[str]:
        return metadata_dirs_by_date(self.workdir, self.date)


SelectionStrategy = SinceLastRun | SinceDate


def _referenced_blobs(path: str) -> list[om.FsLayer]:
    try:
        with open(path, 'rb') as f:
            manifest = om.as_manifest(f.read())
    except OSError as oe:
        raise om.FilesystemError(f'could not read {path=}: {oe}') from oe

    if om.is_manifest_list(manifest):
        return []

    return om.fs_layers(manifest)


def _add_bytes(tf: tarfile.TarFile, name: str, octets: bytes):
    tarinfo = tarfile.TarInfo(name=name)
    tarinfo.size = len(octets)
    tarinfo.mtime = int(time.time())
    tarinfo.mode = 0o644
    tf.addfile(tarinfo=tarinfo, fileobj=io.BytesIO(octets))


def create_diff_tar(
    tar_file: str,
    workdir: str,
    blob_store: oci.blobstore.BlobStore,
    dirs: typing.Iterable[str],
    config: str | bytes,
) -> str:
    '''
    writes a diff-archive to `tar_file`, containing the given metadata-directories (relative to
    workdir), all blobs referenced by (non-list) manifests therein, and the given configuration.

    raises FilesystemError if a referenced blob is missing from blob-store (in which case no
    archive is left behind).
    '''
    if isinstance(config, str):
        config = config.encode('utf-8')

    dirs = sorted(dirs)
    members = [] # (path, arcname)
    blobs = {} # {hexdigest: digest}

    for relpath in dirs:
        component_dir = os.path.join(workdir, relpath)
        logger.info(f'component directory {relpath}')

        try:
            names = sorted(os.listdir(component_dir))
        except OSError as oe:
            raise om.FilesystemError(f'could not list {component_dir=}: {oe}') from oe

        for name in names:
            path = os.path.join(component_dir, name)
            if not os.path.isfile(path):
                continue

            members.append((path, os.path.join(relpath, name)))

            if not name.startswith('manifest') or not name.endswith('.json'):
                continue

            for layer in _referenced_blobs(path):
                blobs.setdefault(layer.hexdigest, layer.digest)

    for hexdigest, digest in blobs.items():
        if not blob_store.exists(digest):
            raise om.FilesystemError(f'{digest=} is referenced, but missing in blob-store')
        members.append((blob_store.path(digest), f'blobs/{hexdigest}'))

    logger.info(f'writing {tar_file} ({len(dirs)} directories, {len(blobs)} blobs)')

    try:
        with tarfile.open(tar_file, mode='w:gz') as tf:
            _add_bytes(tf, 'metadata/isc.yaml', config)

            for path, arcname in members:
                logger.debug(f'adding {arcname}')
                tf.add(path, arcname=arcname, recursive=False)
    except OSError as oe:
        if os.path.exists(tar_file):
            os.unlink(tar_file)
        raise om.FilesystemError(f'could not write {tar_file=}: {oe}') from oe

    return tar_file


def build_diff_archive(
    strategy: SelectionStrategy,
    tar_file: str,
    workdir: str,
    blob_store: oci.blobstore.BlobStore,
    config: str | bytes,
) -> str | None:
    '''
    writes a diff-archive for all metadata-directories touched according to the given strategy.
    If no directory was touched, no archive is written, and None is returned.
    '''
    if not (touched := strategy.touched()):
        logger.info(f'no difference found - {tar_file} not created')
        return None

    logger.info(f'difference: {sorted(touched)}')

    return create_diff_tar(
        tar_file=tar_file,
        workdir=workdir,
        blob_store=blob_store,
        dirs=touched,
        config=config,
    )
