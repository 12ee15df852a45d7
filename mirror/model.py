import dataclasses
import enum
import os

import oci.model as om


BLOBS_STORE_DIR = 'blobs-store'
CACHE_DIR = 'cache'
MANIFEST_FILE = 'manifest.json'
MANIFEST_LIST_FILE = 'manifest-list.json'


# --- image-set-configuration


@dataclasses.dataclass
class IncludeChannel:
    name: str
    minVersion: str | None = None
    maxVersion: str | None = None
    minBundle: str | None = None


@dataclasses.dataclass
class Package:
    name: str
    channels: list[IncludeChannel] | None = None


@dataclasses.dataclass
class Operator:
    catalog: str
    packages: list[Package] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class Image:
    name: str


@dataclasses.dataclass
class Mirror:
    release: str | None = None
    operators: list[Operator] = dataclasses.field(default_factory=list)
    additionalImages: list[Image] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ImageSetConfig:
    kind: str
    apiVersion: str
    mirror: Mirror


# --- declarative (file-based) operator-catalogs


class OlmSchema(enum.Enum):
    PACKAGE = 'olm.package'
    CHANNEL = 'olm.channel'
    BUNDLE = 'olm.bundle'


@dataclasses.dataclass
class ChannelEntry:
    name: str
    replaces: str | None = None
    skips: list[str] = dataclasses.field(default_factory=list)
    skipRange: str | None = None


@dataclasses.dataclass
class OlmPackage:
    name: str
    defaultChannel: str | None = None
    description: str | None = None
    schema: str = OlmSchema.PACKAGE.value


@dataclasses.dataclass
class OlmChannel:
    name: str
    package: str
    entries: list[ChannelEntry] = dataclasses.field(default_factory=list)
    schema: str = OlmSchema.CHANNEL.value


@dataclasses.dataclass
class RelatedImage:
    image: str
    name: str = ''


@dataclasses.dataclass
class OlmBundle:
    name: str
    package: str
    image: str
    relatedImages: list[RelatedImage] = dataclasses.field(default_factory=list)
    schema: str = OlmSchema.BUNDLE.value


CatalogEntry = OlmPackage | OlmChannel | OlmBundle


@dataclasses.dataclass
class RelatedImageSet:
    '''
    images referenced by the bundle a channel of an operator-package resolved to
    '''
    package: str
    channel: str
    bundle: str
    images: list[RelatedImage] = dataclasses.field(default_factory=list)


# --- release-payloads


@dataclasses.dataclass
class ImageFrom:
    name: str
    kind: str = 'DockerImage'


@dataclasses.dataclass
class ReleaseTag:
    name: str
    # `from` is a reserved keyword
    from_: ImageFrom


# --- on-disk layout


class Component(enum.Enum):
    RELEASE = 'release'
    OPERATORS = 'operators'
    ADDITIONAL = 'additional'


def path_safe(version: str) -> str:
    '''
    digest-tags (`sha256:<hex>`) are not reasonable directory names on all platforms
    '''
    return version.replace(':', '-')


@dataclasses.dataclass(frozen=True)
class MirrorManifestPath:
    '''
    location of mirrored manifests below the working directory:

        release:    <name>/<version>/release/<sub_component>/
        operators:  <name>/<version>/operators/<sub_component>/<channel>/
        additional: additional/<name>/<version>/

    where `name` and `version` are the name and tag of the release- or catalog-index (or of the
    additional image), and `sub_component` is the release-component's name, or the operator
    image's name (`<namespace>/<name>`), respectively.

    The directory-tree is the only persistent index of what was mirrored. `registry` and
    `namespace` (of the source) are not encoded and thus not known if parsed from a path.
    '''
    name: str
    version: str
    component: Component
    sub_component: str | None = None
    channel: str | None = None
    manifest_file: str = MANIFEST_FILE
    registry: str | None = None
    namespace: str | None = None

    def __post_init__(self):
        if self.component is Component.RELEASE and not self.sub_component:
            raise ValueError('sub_component is required for release-components')
        if self.component is Component.OPERATORS and not (self.sub_component and self.channel):
            raise ValueError('sub_component and channel are required for operators')

    @property
    def relpath(self) -> str:
        if self.component is Component.ADDITIONAL:
            return os.path.join(Component.ADDITIONAL.value, self.name, self.version)

        parts = [self.name, self.version, self.component.value, *self.sub_component.split('/')]
        if self.component is Component.OPERATORS:
            parts.append(self.channel)

        return os.path.join(*parts)

    def directory(self, workdir: str) -> str:
        return os.path.join(workdir, self.relpath)

    def path(self, workdir: str) -> str:
        return os.path.join(self.directory(workdir), self.manifest_file)

    def with_manifest_file(self, manifest_file: str) -> 'MirrorManifestPath':
        return dataclasses.replace(self, manifest_file=manifest_file)

    @property
    def is_manifest_list(self) -> bool:
        return self.manifest_file == MANIFEST_LIST_FILE

    @property
    def destination_sub_component(self) -> str:
        '''
        the repository (relative to the destination's namespace) to push to
        '''
        if self.component is Component.OPERATORS:
            return self.sub_component
        return self.name

    @staticmethod
    def from_path(path: str, workdir: str) -> 'MirrorManifestPath':
        '''
        parses the given path (of a manifest-file below `workdir`); raises ValueError if the
        path does not match any of the known layouts
        '''
        relpath = os.path.relpath(path, workdir)
        parts = relpath.split(os.sep)

        if len(parts) < 4 or parts[0] in ('..', BLOBS_STORE_DIR):
            raise ValueError(f'not a mirrored manifest: {relpath=}')

        *parts, manifest_file = parts
        if not manifest_file.startswith('manifest') or not manifest_file.endswith('.json'):
            raise ValueError(f'not a manifest-file: {relpath=}')

        if parts[0] == Component.ADDITIONAL.value and len(parts) == 3:
            return MirrorManifestPath(
                name=parts[1],
                version=parts[2],
                component=Component.ADDITIONAL,
                manifest_file=manifest_file,
            )

        name, version, component, *rest = parts

        if component == Component.RELEASE.value and len(rest) == 1:
            return MirrorManifestPath(
                name=name,
                version=version,
                component=Component.RELEASE,
                sub_component=rest[0],
                manifest_file=manifest_file,
            )

        if component == Component.OPERATORS.value and len(rest) >= 2:
            *sub_component, channel = rest
            return MirrorManifestPath(
                name=name,
                version=version,
                component=Component.OPERATORS,
                sub_component='/'.join(sub_component),
                channel=channel,
                manifest_file=manifest_file,
            )

        raise ValueError(f'not a mirrored manifest: {relpath=}')


def index_path(
    image_reference: str | om.OciImageReference,
) -> tuple[str, str]:
    '''
    returns name and (path-safe) version of the given (release- or catalog-) index image
    '''
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    if image_reference.has_tag:
        version = path_safe(image_reference.version)
    else:
        version = 'latest'

    return image_reference.repository, version
