import os

import pytest

import mirror.model as mm


def test_path_safe():
    assert mm.path_safe('v4.14') == 'v4.14'
    assert mm.path_safe('sha256:abc') == 'sha256-abc'


def test_index_path():
    assert mm.index_path('quay.io/openshift-release-dev/ocp-release:4.14.1-x86_64') == \
        ('ocp-release', '4.14.1-x86_64')
    assert mm.index_path('registry.example.org/ns/index@sha256:abc') == ('index', 'sha256-abc')
    assert mm.index_path('registry.example.org/ns/index') == ('index', 'latest')


@pytest.mark.parametrize(
    'manifest_path,relpath',
    [
        (
            mm.MirrorManifestPath(
                name='ocp-release',
                version='4.14.1',
                component=mm.Component.RELEASE,
                sub_component='etcd',
            ),
            os.path.join('ocp-release', '4.14.1', 'release', 'etcd'),
        ),
        (
            mm.MirrorManifestPath(
                name='redhat-operator-index',
                version='v4.14',
                component=mm.Component.OPERATORS,
                sub_component='ns/op-image',
                channel='stable',
                manifest_file=mm.MANIFEST_LIST_FILE,
            ),
            os.path.join('redhat-operator-index', 'v4.14', 'operators', 'ns', 'op-image', 'stable'),
        ),
        (
            mm.MirrorManifestPath(
                name='ubi',
                version='latest',
                component=mm.Component.ADDITIONAL,
            ),
            os.path.join('additional', 'ubi', 'latest'),
        ),
    ],
)
def test_manifest_path(manifest_path, relpath, tmp_path):
    workdir = str(tmp_path)

    assert manifest_path.relpath == relpath
    assert manifest_path.path(workdir) == os.path.join(
        workdir, relpath, manifest_path.manifest_file,
    )

    parsed = mm.MirrorManifestPath.from_path(manifest_path.path(workdir), workdir)

    assert parsed == manifest_path


def test_manifest_path_source_attributes_are_not_encoded(tmp_path):
    manifest_path = mm.MirrorManifestPath(
        name='ubi',
        version='latest',
        component=mm.Component.ADDITIONAL,
        registry='registry.redhat.io',
        namespace='ubi8',
    )

    parsed = mm.MirrorManifestPath.from_path(manifest_path.path(str(tmp_path)), str(tmp_path))

    assert parsed.registry is None
    assert parsed.namespace is None
    assert parsed.relpath == manifest_path.relpath


def test_manifest_path_requires_sub_component():
    with pytest.raises(ValueError):
        mm.MirrorManifestPath(name='n', version='v', component=mm.Component.RELEASE)

    with pytest.raises(ValueError):
        mm.MirrorManifestPath(
            name='n',
            version='v',
            component=mm.Component.OPERATORS,
            sub_component='ns/op',
        )


@pytest.mark.parametrize(
    'relpath',
    [
        # index-manifest
        os.path.join('ocp-release', '4.14.1', 'manifest.json'),
        os.path.join('blobs-store', 'ab', 'abcdef', 'manifest.json'),
        os.path.join('ocp-release', '4.14.1', 'release', 'etcd', 'image-references'),
        os.path.join('ocp-release', '4.14.1', 'unknown', 'etcd', 'manifest.json'),
        os.path.join('ocp-release', '4.14.1', 'operators', 'op', 'manifest.json'),
        os.path.join('additional', 'ns', 'ubi', 'latest', 'x', 'manifest.json'),
    ],
)
def test_from_path_rejects_unknown_layouts(relpath, tmp_path):
    with pytest.raises(ValueError):
        mm.MirrorManifestPath.from_path(os.path.join(tmp_path, relpath), str(tmp_path))


def test_destination_sub_component():
    operator = mm.MirrorManifestPath(
        name='redhat-operator-index',
        version='v4.14',
        component=mm.Component.OPERATORS,
        sub_component='ns/op-image',
        channel='stable',
    )
    release = mm.MirrorManifestPath(
        name='ocp-release',
        version='4.14.1',
        component=mm.Component.RELEASE,
        sub_component='etcd',
    )

    assert operator.destination_sub_component == 'ns/op-image'
    assert release.destination_sub_component == 'ocp-release'
    assert operator.is_manifest_list is False
    assert operator.with_manifest_file(mm.MANIFEST_LIST_FILE).is_manifest_list
