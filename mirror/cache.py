'''
change-detection for index-images (release-payloads and operator-catalogs)

an index-image's manifest is stored as `<index-dir>/manifest.json`, its layers are extracted
below `<index-dir>/cache/<first six hex-chars of layer-digest>`. If a freshly retrieved manifest
is structurally equal to the one stored on disk (and the cache-directory exists), neither blobs
are retrieved, nor layers extracted.
'''
import dataclasses
import logging
import os
import shutil
import tarfile

import mirror.model as mm
import oci.blobstore
import oci.client as oc
import oci.model as om

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = om.OciPlatform(architecture='amd64', os='linux')


@dataclasses.dataclass
class IndexSyncResult:
    image_reference: om.OciImageReference
    index_dir: str
    changed: bool
    blobs: oc.BlobFetchResult | None = None

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.index_dir, mm.MANIFEST_FILE)

    @property
    def cache_dir(self) -> str:
        return os.path.join(self.index_dir, mm.CACHE_DIR)


def manifests_equal(
    left: str | bytes | om.Manifest,
    right: str | bytes | om.Manifest,
) -> bool:
    '''
    compares the given manifests structurally (i.e. ignoring whitespace and ordering of
    attributes). Manifests that cannot be parsed are considered to differ.
    '''
    try:
        return om.as_manifest(left) == om.as_manifest(right)
    except om.ParseError as pe:
        logger.warning(f'could not parse manifest - treating as changed: {pe}')
        return False


def read_manifest(path: str) -> bytes | None:
    if not os.path.isfile(path):
        return None

    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as oe:
        raise om.FilesystemError(f'could not read {path=}: {oe}') from oe


def write_file(path: str, octets: bytes):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(octets)
    except OSError as oe:
        raise om.FilesystemError(f'could not write {path=}: {oe}') from oe


def _platform_manifest(
    registry: oc.RegistryInterface,
    image_reference: om.OciImageReference,
    manifest_list: om.OciImageManifestList,
    token: str | None,
    routes: oc.OciRoutes,
    platform: om.OciPlatform,
) -> om.OciImageManifest | om.OciImageManifestV1:
    for entry in manifest_list.manifests:
        if entry.platform == platform:
            break
    else:
        if not manifest_list.manifests:
            raise om.ParseError(f'empty manifest-list for {image_reference=}')
        entry = manifest_list.manifests[0]
        logger.warning(f'no manifest for {platform=} - falling back to {entry.platform=}')

    raw = registry.fetch_manifest(
        url=routes.manifest_url(image_reference.with_tag(entry.digest)),
        token=token,
    )
    manifest = om.as_manifest(raw)

    if om.is_manifest_list(manifest):
        raise om.ParseError(f'nested manifest-lists are not supported: {image_reference=}')

    return manifest


def untar_layers(
    blob_store: oci.blobstore.BlobStore,
    cache_dir: str,
    layers: list[om.FsLayer],
):
    '''
    extracts the given layers (read from blob-store) into `<cache_dir>/<first six hex-chars>`.
    Layers that were already extracted are skipped; blobs that are not tar-archives are logged
    and skipped.
    '''
    for layer in layers:
        target_dir = os.path.join(cache_dir, layer.hexdigest[:6])
        if os.path.isdir(target_dir):
            logger.debug(f'cache exists {target_dir}')
            continue

        if not blob_store.exists(layer.digest):
            logger.warning(f'cannot extract {layer.digest=} - blob is missing')
            continue

        logger.info(f'untarring file {layer.hexdigest[:6]}')
        try:
            os.makedirs(target_dir)
        except OSError as oe:
            raise om.FilesystemError(f'could not create {target_dir=}: {oe}') from oe

        try:
            with blob_store.open(layer.digest) as f, tarfile.open(fileobj=f, mode='r:*') as tf:
                tf.extractall(path=target_dir, filter='tar')
        except tarfile.TarError as te:
            logger.warning(f'skipping {layer.digest=}: {te}')
        except OSError as oe:
            raise om.FilesystemError(f'could not extract {layer.digest=}: {oe}') from oe


def find_dir(cache_dir: str, name: str) -> str | None:
    '''
    returns the path of the first directory named `name`, found directly below any of the
    extracted layers in `cache_dir` (i.e. `<cache_dir>/<layer>/<name>`), or None
    '''
    if not os.path.isdir(cache_dir):
        return None

    for layer_dir in sorted(os.listdir(cache_dir)):
        candidate = os.path.join(cache_dir, layer_dir, name)
        if os.path.isdir(candidate):
            return candidate

    return None


def sync_index(
    registry: oc.RegistryInterface,
    blob_store: oci.blobstore.BlobStore,
    image_reference: str | om.OciImageReference,
    index_dir: str,
    token: str | None,
    queued: oc.QueuedDigests | None=None,
    routes: oc.OciRoutes=oc.OciRoutes(),
    platform: om.OciPlatform=DEFAULT_PLATFORM,
) -> IndexSyncResult:
    '''
    retrieves the manifest of the given index-image, and compares it against the one stored
    in `index_dir`. If equal (and cache-directory exists), returns w/o any further action.

    Otherwise, the cache-directory is purged, all blobs are retrieved and layers extracted; the
    manifest is stored afterwards (only if all blobs could be retrieved, so an incomplete cache
    will be re-synced on next run).

    for manifest-lists, the manifest for the given platform is extracted.

    raises TransportError if the index-manifest cannot be retrieved.
    '''
    image_reference = om.OciImageReference.to_image_ref(image_reference)
    result = IndexSyncResult(
        image_reference=image_reference,
        index_dir=index_dir,
        changed=True,
    )

    raw_manifest = registry.fetch_manifest(
        url=routes.manifest_url(image_reference),
        token=token,
    )

    on_disk = read_manifest(result.manifest_path)
    if (
        on_disk is not None
        and os.path.isdir(result.cache_dir)
        and manifests_equal(on_disk, raw_manifest)
    ):
        logger.info(f'no change detected for {image_reference} - using cache')
        result.changed = False
        return result

    logger.info(f'detected change in index manifest for {image_reference}')

    manifest = om.as_manifest(raw_manifest)
    if om.is_manifest_list(manifest):
        manifest = _platform_manifest(
            registry=registry,
            image_reference=image_reference,
            manifest_list=manifest,
            token=token,
            routes=routes,
            platform=platform,
        )

    try:
        if os.path.isdir(result.cache_dir):
            shutil.rmtree(result.cache_dir)
        os.makedirs(result.cache_dir)
    except OSError as oe:
        raise om.FilesystemError(f'could not recreate {result.cache_dir=}: {oe}') from oe

    blobs = om.fs_layers(manifest, original_ref=image_reference.ref_without_tag)
    result.blobs = registry.fetch_blobs(
        blob_store=blob_store,
        base_url=routes.blobs_url(image_reference),
        token=token,
        layers=blobs,
        queued=queued,
    )
    logger.info(f'completed image index download {image_reference}')

    if isinstance(manifest, om.OciImageManifest):
        layers = [
            om.FsLayer(digest=layer.digest, size=layer.size)
            for layer in manifest.layers
        ]
    else:
        layers = blobs

    untar_layers(
        blob_store=blob_store,
        cache_dir=result.cache_dir,
        layers=layers,
    )
    logger.info('completed untar of layers')

    if result.blobs.ok:
        write_file(result.manifest_path, raw_manifest)
    else:
        logger.error(
            f'{len(result.blobs.failed)} blob(s) of {image_reference} could not be retrieved '
            '- will resync on next run'
        )

    return result
