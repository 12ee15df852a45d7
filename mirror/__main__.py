import argparse
import logging
import os
import sys

import mirror.collector
import mirror.config
import mirror.diff
import mirror.log
import mirror.model as mm
import oci.auth
import oci.blobstore
import oci.client
import oci.model as om

logger = logging.getLogger('mirror')

FILE_PREFIX = 'file://'
DOCKER_PREFIX = 'docker://'


def _oci_client(parsed) -> oci.client.Client:
    auth_file = parsed.auth_file
    if auth_file and not os.path.exists(auth_file):
        print(f'Error: not an existing file: {auth_file=}')
        exit(1)

    # if no auth-file was passed (and none found at default locations), try anonymous auth
    return oci.client.Client(
        credentials_lookup=oci.auth.docker_credentials_lookup(
            docker_cfg=auth_file,
            absent_ok=True,
        ),
        max_workers=parsed.max_workers,
        destination_scheme='http' if parsed.insecure else 'https',
        verify_digests=parsed.verify_digests,
    )


def _workdir(parsed) -> str:
    if parsed.destination.startswith(FILE_PREFIX):
        if (path := parsed.destination.removeprefix(FILE_PREFIX)):
            return path
    return parsed.workdir


def _selection_strategy(parsed, workdir: str):
    if not parsed.diff_tar:
        return None

    if parsed.date:
        return mirror.diff.SinceDate(workdir=workdir, date=parsed.date)

    # snapshot must be taken before mirroring
    return mirror.diff.SinceLastRun(workdir=workdir)


def mirror_to_disk(
    parsed,
    config: mm.ImageSetConfig,
    config_text: str,
    ctx: mirror.collector.MirrorContext,
) -> bool:
    try:
        strategy = _selection_strategy(parsed, workdir=ctx.workdir)
    except ValueError as ve:
        print(f'Error: {ve}')
        exit(1)

    mirror.collector.mirror_to_disk(
        ctx=ctx,
        config=config,
        skip=mirror.collector.Skip(parsed.skip),
    )

    if not strategy:
        return ctx.ok

    logger.info(f'creating {parsed.diff_tar_file}')
    try:
        if mirror.diff.build_diff_archive(
            strategy=strategy,
            tar_file=parsed.diff_tar_file,
            workdir=ctx.workdir,
            blob_store=ctx.blob_store,
            config=config_text,
        ):
            logger.info(f'{parsed.diff_tar_file} successfully created')
    except om.OciError as oe:
        logger.error(f'error creating diff tar: {oe}')
        return False

    return ctx.ok


def disk_to_mirror(
    parsed,
    ctx: mirror.collector.MirrorContext,
) -> bool:
    mirror.collector.disk_to_mirror(
        ctx=ctx,
        destination=parsed.destination,
        skip=mirror.collector.Skip(parsed.skip),
    )
    return ctx.ok


def main():
    parser = argparse.ArgumentParser(
        prog='mirror',
        description='mirror release-, operator- and additional images to disk, or from disk to '
        'a registry',
    )
    parser.add_argument(
        '--config',
        required=True,
        help='path to image-set-configuration (yaml)',
    )
    parser.add_argument(
        '--destination',
        required=True,
        help=f'{FILE_PREFIX}<dir> (mirror to disk) or {DOCKER_PREFIX}<host>/<namespace> '
        '(disk to mirror)',
    )
    parser.add_argument(
        '--workdir',
        default='working-dir',
        help='working directory (used if destination does not specify one)',
    )
    parser.add_argument(
        '--diff-tar',
        action='store_true',
        help='create a diff-archive (mirror to disk only)',
    )
    parser.add_argument(
        '--diff-tar-file',
        default='mirror-diff.tar.gz',
    )
    parser.add_argument(
        '--date',
        default=None,
        help='include metadata created after the given date (yyyy/mm/dd) in diff-archive',
    )
    parser.add_argument(
        '--loglevel',
        choices=tuple(mirror.log.LOGLEVELS),
        default='info',
    )
    parser.add_argument(
        '--skip',
        choices=tuple(s.value for s in mirror.collector.Skip),
        default=mirror.collector.Skip.NONE.value,
    )
    parser.add_argument(
        '--auth-file',
        default=None,
        help='auth.json (defaults to $XDG_RUNTIME_DIR/containers/auth.json, or docker-cfg)',
    )
    parser.add_argument(
        '--insecure',
        action='store_true',
        help='use plain http for destination-registry',
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=oci.client.DEFAULT_MAX_WORKERS,
        help='max. number of parallel blob-downloads',
    )
    parser.add_argument(
        '--verify-digests',
        action='store_true',
        help='verify digests of downloaded blobs',
    )

    parsed = parser.parse_args()

    mirror.log.configure_logging_for_loglevel(parsed.loglevel)

    if not parsed.destination.startswith((FILE_PREFIX, DOCKER_PREFIX)):
        print(f'Error: destination must use {FILE_PREFIX} or {DOCKER_PREFIX} prefix')
        exit(1)

    try:
        config, config_text = mirror.config.load_config(parsed.config)
    except (OSError, ValueError) as e:
        print(f'Error: could not load {parsed.config=}: {e}')
        exit(1)

    logger.info(f'image-mirror {parsed.config}')
    if parsed.skip != mirror.collector.Skip.NONE.value:
        logger.info(f'skipping {parsed.skip}')

    oci_client = _oci_client(parsed=parsed)
    workdir = _workdir(parsed)

    if parsed.destination.startswith(DOCKER_PREFIX) and parsed.insecure:
        # plain-http registries are not expected to offer token-auth
        def token_lookup(image_reference, action='pull'):
            if 'push' in action:
                return None
            return oci_client.bearer_token(image_reference, action=action)
    else:
        token_lookup = oci_client.bearer_token

    ctx = mirror.collector.MirrorContext(
        registry=oci_client,
        blob_store=oci.blobstore.BlobStore(os.path.join(workdir, mm.BLOBS_STORE_DIR)),
        workdir=workdir,
        token_lookup=token_lookup,
    )

    if parsed.destination.startswith(FILE_PREFIX):
        ok = mirror_to_disk(
            parsed=parsed,
            config=config,
            config_text=config_text,
            ctx=ctx,
        )
    else:
        ok = disk_to_mirror(
            parsed=parsed,
            ctx=ctx,
        )

    if not ok:
        logger.error(f'{len(ctx.failed)} unit(s) failed: {", ".join(ctx.failed)}')
        sys.exit(1)


if __name__ == '__main__':
    main()
