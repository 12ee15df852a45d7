'''
resolves related images of operator-packages from file-based (declarative) operator-catalogs

catalogs are expected in the layout used by operator-index images:

    configs/<package-name>/catalog.json

where `catalog.json` is a stream of (concatenated) json-objects, each of which is an entry of one
of the schemas `olm.package`, `olm.channel` or `olm.bundle` (entries of other schemas are
ignored). `catalog.yaml` (or `index.yaml`), containing a stream of yaml-documents, is also
accepted.
'''
import json
import logging
import os

import dacite
import yaml

import mirror.model as mm
import oci.model as om

logger = logging.getLogger(__name__)

CATALOG_FILE_NAMES = (
    'catalog.json',
    'catalog.yaml',
    'index.json',
    'index.yaml',
)

_schema_types = {
    mm.OlmSchema.PACKAGE.value: mm.OlmPackage,
    mm.OlmSchema.CHANNEL.value: mm.OlmChannel,
    mm.OlmSchema.BUNDLE.value: mm.OlmBundle,
}


def _iter_json_stream(text: str):
    decoder = json.JSONDecoder()
    idx = 0
    end = len(text)

    while True:
        # skip whitespace between documents
        while idx < end and text[idx].isspace():
            idx += 1
        if idx >= end:
            return

        obj, idx = decoder.raw_decode(text, idx)
        yield obj


def _iter_documents(text: str):
    if text.lstrip().startswith('{'):
        try:
            yield from _iter_json_stream(text)
        except ValueError as ve:
            raise om.ParseError(f'malformed catalog: {ve}') from ve
        return

    try:
        for doc in yaml.safe_load_all(text):
            if doc is None:
                continue
            yield doc
    except yaml.YAMLError as ye:
        raise om.ParseError(f'malformed catalog: {ye}') from ye


def parse_catalog(text: str) -> list[mm.CatalogEntry]:
    '''
    parses the given catalog-contents into a flat list of entries (in declaration order)

    raises ParseError if contents are not well-formed, or an entry lacks required attributes
    '''
    entries = []

    for doc in _iter_documents(text):
        if not isinstance(doc, dict):
            raise om.ParseError(f'expected catalog-entries to be objects, got: {type(doc)=}')

        schema = doc.get('schema')
        if not (data_class := _schema_types.get(schema)):
            logger.debug(f'ignoring catalog-entry of {schema=}')
            continue

        try:
            entries.append(
                dacite.from_dict(
                    data_class=data_class,
                    data=doc,
                )
            )
        except dacite.DaciteError as de:
            raise om.ParseError(f'malformed {schema} entry: {de}') from de

    return entries


def read_catalog(package_dir: str) -> list[mm.CatalogEntry]:
    for name in CATALOG_FILE_NAMES:
        path = os.path.join(package_dir, name)
        if not os.path.isfile(path):
            continue

        logger.debug(f'reading catalog from {path=}')
        try:
            with open(path) as f:
                text = f.read()
        except OSError as oe:
            raise om.FilesystemError(f'could not read {path=}: {oe}') from oe

        return parse_catalog(text)

    raise om.ParseError(f'no catalog found in {package_dir=}')


def default_channel(
    entries: list[mm.CatalogEntry],
    package_name: str,
) -> str | None:
    for entry in entries:
        if isinstance(entry, mm.OlmPackage) and entry.name == package_name:
            return entry.defaultChannel
    return None


def resolve_related_images(
    entries: list[mm.CatalogEntry],
    package: mm.Package,
) -> list[mm.RelatedImageSet]:
    '''
    returns the related images for each of the channels requested for the given package (or for
    the package's default-channel, if no channels were requested).

    a channel's bundle is determined by the first entry of the channel; upgrade-edges
    (`replaces`, `skips`, `skipRange`) are not evaluated.

    results are inserted at the head (i.e. in reverse order of requested channels). Channels that
    cannot be resolved (unknown channel, channel w/o entries, missing bundle) are logged and
    skipped.
    '''
    if package.channels:
        channel_names = [channel.name for channel in package.channels]
    elif (channel_name := default_channel(entries, package.name)):
        logger.info(f'using default channel {channel_name} for operator {package.name}')
        channel_names = [channel_name]
    else:
        logger.warning(f'no channel requested and no default-channel declared for {package.name=}')
        return []

    channels = {
        entry.name: entry for entry in entries
        if isinstance(entry, mm.OlmChannel) and entry.package == package.name
    }
    bundles = {
        entry.name: entry for entry in entries
        if isinstance(entry, mm.OlmBundle)
    }

    related_image_sets = []
    for channel_name in channel_names:
        if not (channel := channels.get(channel_name)):
            logger.warning(f'{package.name=} has no channel {channel_name=} - skipping')
            continue

        if not channel.entries:
            logger.warning(f'{channel_name=} of {package.name=} has no entries - skipping')
            continue

        bundle_name = channel.entries[0].name

        if not (bundle := bundles.get(bundle_name)):
            logger.warning(f'did not find {bundle_name=} (from {channel_name=}) - skipping')
            continue

        logger.debug(f'{package.name=} {channel_name=} resolved to {bundle_name=}')

        related_image_sets.insert(
            0,
            mm.RelatedImageSet(
                package=package.name,
                channel=channel_name,
                bundle=bundle_name,
                images=list(bundle.relatedImages),
            ),
        )

    return related_image_sets


def resolve(
    configs_dir: str,
    packages: list[mm.Package],
) -> list[mm.RelatedImageSet]:
    '''
    resolves related images for all given packages from the catalogs below `configs_dir`.
    Packages whose catalog cannot be read are logged and skipped.
    '''
    related_image_sets = []

    for package in packages:
        try:
            entries = read_catalog(os.path.join(configs_dir, package.name))
        except om.OciError as oe:
            logger.error(f'cannot resolve related images for {package.name=}: {oe}')
            continue

        for related_image_set in resolve_related_images(entries, package):
            related_image_sets.insert(0, related_image_set)

    return related_image_sets
