'''
collectors for the image-categories of an image-set-configuration (release-payload, operators
from operator-catalogs, and additional images).

mirror-to-disk writes manifests into the working directory (see `mirror.model.MirrorManifestPath`
for the layout) and blobs into the blob-store. disk-to-mirror pushes mirrored images from the
working directory to a destination-registry.

failures are handled per unit (one index, one image, one push): they are logged and recorded in
the passed `MirrorContext`, and processing continues w/ the next unit.
'''
import collections.abc
import dataclasses
import enum
import json
import logging
import os

import dacite

import mirror.cache
import mirror.catalog
import mirror.model as mm
import oci.blobstore
import oci.client as oc
import oci.model as om

logger = logging.getLogger(__name__)

# (image_reference, action) -> bearer-token
TokenLookup = collections.abc.Callable[[str, str], str | None]


def _anonymous(image_reference: str, action: str='pull') -> str | None:
    return None


class Skip(enum.Enum):
    NONE = 'none'
    RELEASE = 'release'
    OPERATORS = 'operators'
    ADDITIONAL = 'additional'
    RELEASE_OPERATORS = 'release-operators'

    def skips(self, component: mm.Component) -> bool:
        if self is Skip.RELEASE_OPERATORS:
            return component in (mm.Component.RELEASE, mm.Component.OPERATORS)
        return self.value == component.value


@dataclasses.dataclass
class MirrorContext:
    registry: oc.RegistryInterface
    blob_store: oci.blobstore.BlobStore
    workdir: str
    token_lookup: TokenLookup = _anonymous
    queued: oc.QueuedDigests = dataclasses.field(default_factory=oc.QueuedDigests)
    routes: oc.OciRoutes = dataclasses.field(default_factory=oc.OciRoutes)
    failed: list[str] = dataclasses.field(default_factory=list)

    def token(self, image_reference: str | om.OciImageReference, action: str='pull'):
        return self.token_lookup(str(image_reference), action)

    def fail(self, unit: str, error: Exception):
        logger.error(f'{unit}: {error}')
        self.failed.append(unit)

    @property
    def ok(self) -> bool:
        return not self.failed


def _write_manifest(directory: str, name: str, raw: bytes):
    mirror.cache.write_file(os.path.join(directory, name), raw)


def mirror_image(
    ctx: MirrorContext,
    image_reference: str | om.OciImageReference,
    target_dir: str,
    token: str | None,
) -> oc.BlobFetchResult:
    '''
    retrieves all blobs referenced by the given image into blob-store, and writes its manifest
    (or manifest-list, plus all per-platform manifests) into `target_dir`. Manifests are only
    written if all blobs were retrieved.
    '''
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    resolved = oc.resolve_image(
        registry=ctx.registry,
        image_reference=image_reference,
        token=token,
        routes=ctx.routes,
    )

    result = ctx.registry.fetch_blobs(
        blob_store=ctx.blob_store,
        base_url=ctx.routes.blobs_url(image_reference),
        token=token,
        layers=resolved.layers(),
        queued=ctx.queued,
    )

    # manifests are only persisted for complete images
    if not result.ok:
        raise om.TransportError(
            f'{len(result.failed)} blob(s) of {image_reference} could not be retrieved'
        )

    if resolved.is_list:
        for sub_manifest in resolved.sub_manifests:
            _write_manifest(target_dir, sub_manifest.file_name, sub_manifest.raw)
        _write_manifest(target_dir, mm.MANIFEST_LIST_FILE, resolved.raw)
    else:
        _write_manifest(target_dir, mm.MANIFEST_FILE, resolved.raw)

    return result


def read_release_tags(release_manifests_dir: str) -> list[mm.ReleaseTag]:
    '''
    reads the release-components from `release-manifests/image-references`
    '''
    path = os.path.join(release_manifests_dir, 'image-references')
    try:
        with open(path) as f:
            image_references = json.load(f)
    except OSError as oe:
        raise om.FilesystemError(f'could not read {path=}: {oe}') from oe
    except ValueError as ve:
        raise om.ParseError(f'malformed {path=}: {ve}') from ve

    try:
        return [
            dacite.from_dict(
                data_class=mm.ReleaseTag,
                data={'name': tag['name'], 'from_': tag['from']},
            )
            for tag in image_references['spec']['tags']
        ]
    except (KeyError, TypeError, dacite.DaciteError) as e:
        raise om.ParseError(f'malformed {path=}: {e}') from e


def _sync_index(
    ctx: MirrorContext,
    image_reference: om.OciImageReference,
    token: str | None,
) -> mirror.cache.IndexSyncResult:
    name, version = mm.index_path(image_reference)

    return mirror.cache.sync_index(
        registry=ctx.registry,
        blob_store=ctx.blob_store,
        image_reference=image_reference,
        index_dir=os.path.join(ctx.workdir, name, version),
        token=token,
        queued=ctx.queued,
        routes=ctx.routes,
    )


def release_mirror_to_disk(
    ctx: MirrorContext,
    release: str,
):
    logger.info('release collector mode: mirrorToDisk')

    image_reference = om.OciImageReference(release)
    try:
        token = ctx.token(image_reference)
        index = _sync_index(ctx, image_reference, token)
    except (om.OciError, ValueError) as e:
        ctx.fail(f'release-index {release}', e)
        return

    if not (release_manifests := mirror.cache.find_dir(index.cache_dir, 'release-manifests')):
        ctx.fail(f'release-index {release}', om.ParseError('no release-manifests directory'))
        return

    try:
        tags = read_release_tags(release_manifests)
    except om.OciError as oe:
        ctx.fail(f'release-index {release}', oe)
        return

    name, version = mm.index_path(image_reference)

    for tag in tags:
        target = mm.MirrorManifestPath(
            name=name,
            version=version,
            component=mm.Component.RELEASE,
            sub_component=tag.name,
        )
        logger.info(f'mirroring release-component {tag.name}')

        try:
            component_ref = om.OciImageReference(tag.from_.name)
            mirror_image(
                ctx=ctx,
                image_reference=component_ref,
                target_dir=target.directory(ctx.workdir),
                token=ctx.token(component_ref),
            )
        except (om.OciError, ValueError) as e:
            ctx.fail(f'release-component {tag.name}', e)


def operators_mirror_to_disk(
    ctx: MirrorContext,
    operators: list[mm.Operator],
):
    logger.info('operator collector mode: mirrorToDisk')

    for operator in operators:
        image_reference = om.OciImageReference(operator.catalog)

        try:
            token = ctx.token(image_reference)
            index = _sync_index(ctx, image_reference, token)
        except (om.OciError, ValueError) as e:
            ctx.fail(f'catalog {operator.catalog}', e)
            continue

        if not (configs_dir := mirror.cache.find_dir(index.cache_dir, 'configs')):
            ctx.fail(f'catalog {operator.catalog}', om.ParseError('no configs directory'))
            continue
        logger.debug(f'full path for directory configs {configs_dir}')

        name, version = mm.index_path(image_reference)

        for related_image_set in mirror.catalog.resolve(configs_dir, operator.packages):
            for related_image in related_image_set.images:
                try:
                    related_ref = om.OciImageReference(related_image.image)
                    target = mm.MirrorManifestPath(
                        name=name,
                        version=version,
                        component=mm.Component.OPERATORS,
                        sub_component=related_ref.name,
                        channel=related_image_set.channel,
                        registry=related_ref.registry,
                        namespace=related_ref.namespace,
                    )
                    logger.debug(f'operator manifest path {target.relpath}')

                    mirror_image(
                        ctx=ctx,
                        image_reference=related_ref,
                        target_dir=target.directory(ctx.workdir),
                        token=ctx.token(related_ref),
                    )
                except (om.OciError, ValueError) as e:
                    ctx.fail(f'related image {related_image.image}', e)


def additional_mirror_to_disk(
    ctx: MirrorContext,
    images: list[mm.Image],
):
    '''
    mirrors additional images; images whose manifest did not change since the previous run are
    skipped
    '''
    logger.info('additional image collector mode: mirrorToDisk')

    for image in images:
        try:
            image_reference = om.OciImageReference(image.name)
            name, version = mm.index_path(image_reference)
            target = mm.MirrorManifestPath(
                name=name,
                version=version,
                component=mm.Component.ADDITIONAL,
                registry=image_reference.registry,
                namespace=image_reference.namespace,
            )
            target_dir = target.directory(ctx.workdir)
            token = ctx.token(image_reference)

            raw = ctx.registry.fetch_manifest(
                url=ctx.routes.manifest_url(image_reference),
                token=token,
            )
            on_disk = mirror.cache.read_manifest(
                target.path(ctx.workdir)
            ) or mirror.cache.read_manifest(
                target.with_manifest_file(mm.MANIFEST_LIST_FILE).path(ctx.workdir)
            )

            if on_disk is not None and mirror.cache.manifests_equal(on_disk, raw):
                logger.info(f'no change detected for {image_reference}')
                continue

            logger.info(f'detected change in manifest for {image_reference}')
            mirror_image(
                ctx=ctx,
                image_reference=image_reference,
                target_dir=target_dir,
                token=token,
            )
        except (om.OciError, ValueError) as e:
            ctx.fail(f'additional image {image.name}', e)


def mirror_to_disk(
    ctx: MirrorContext,
    config: mm.ImageSetConfig,
    skip: Skip=Skip.NONE,
):
    '''
    mirrors all images of the given configuration to disk, in order release, operators,
    additional images
    '''
    if config.mirror.release and not skip.skips(mm.Component.RELEASE):
        release_mirror_to_disk(ctx, config.mirror.release)

    if config.mirror.operators and not skip.skips(mm.Component.OPERATORS):
        operators_mirror_to_disk(ctx, config.mirror.operators)

    if config.mirror.additionalImages and not skip.skips(mm.Component.ADDITIONAL):
        additional_mirror_to_disk(ctx, config.mirror.additionalImages)


def iter_mirrored_manifests(
    workdir: str,
    components: collections.abc.Container[mm.Component]=tuple(mm.Component),
) -> collections.abc.Generator[mm.MirrorManifestPath, None, None]:
    '''
    yields all mirrored (single-image) manifests below workdir that belong to one of the given
    components (manifest-lists and index-manifests are omitted)
    '''
    for dirpath, dirnames, filenames in os.walk(workdir):
        dirnames[:] = sorted(
            d for d in dirnames if not d in (mm.BLOBS_STORE_DIR, mm.CACHE_DIR)
        )
        for filename in sorted(filenames):
            try:
                manifest_path = mm.MirrorManifestPath.from_path(
                    path=os.path.join(dirpath, filename),
                    workdir=workdir,
                )
            except ValueError:
                continue

            if manifest_path.is_manifest_list:
                continue
            if not manifest_path.component in components:
                continue

            yield manifest_path


def disk_to_mirror(
    ctx: MirrorContext,
    destination: str,
    skip: Skip=Skip.NONE,
):
    '''
    pushes all mirrored images (read from working directory and blob-store) to the given
    destination (`docker://<host>/<namespace>`)
    '''
    logger.info(f'diskToMirror - pushing to {destination}')

    components = tuple(c for c in mm.Component if not skip.skips(c))
    routes_destination = destination.split('://', 1)[-1].rstrip('/')

    for manifest_path in iter_mirrored_manifests(ctx.workdir, components):
        unit = f'push {manifest_path.relpath}/{manifest_path.manifest_file}'

        try:
            raw = mirror.cache.read_manifest(manifest_path.path(ctx.workdir))
            sub_component = manifest_path.destination_sub_component
            token = ctx.token(f'{routes_destination}/{sub_component}', 'pull,push')

            result = ctx.registry.push_image(
                blob_store=ctx.blob_store,
                sub_component=sub_component,
                dest_url=destination,
                manifest=raw,
                token=token,
            )
            logger.info(f'pushed {result.manifest_url} ({len(result.uploaded)} blob(s) uploaded)')
        except om.OciError as oe:
            ctx.fail(unit, oe)
