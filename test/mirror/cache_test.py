import json
import os

import pytest

import mirror.cache
import oci.client as oc
import oci.model as om

index_ref = 'registry.example.org/ns/catalog-index:v1'


def _tree(root: str) -> dict[str, bytes]:
    contents = {}
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            with open(path, 'rb') as f:
                contents[os.path.relpath(path, root)] = f.read()
    return contents


def test_manifests_equal():
    manifest = {
        'schemaVersion': 2,
        'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
        'config': {'mediaType': 'a', 'digest': 'sha256:c', 'size': 1},
        'layers': [{'mediaType': 'b', 'digest': 'sha256:l', 'size': 2}],
    }

    # whitespace and ordering of attributes are irrelevant
    assert mirror.cache.manifests_equal(
        json.dumps(manifest),
        json.dumps(manifest, indent=2, sort_keys=True).encode('utf-8'),
    )

    changed = {**manifest, 'layers': [{'mediaType': 'b', 'digest': 'sha256:x', 'size': 2}]}
    assert not mirror.cache.manifests_equal(json.dumps(manifest), json.dumps(changed))

    assert not mirror.cache.manifests_equal(b'garbage', json.dumps(manifest))


def test_sync_index_extracts_layers(registry, blob_store, workdir, layer):
    layer1 = layer({'configs/op/catalog.json': b'{}'})
    layer2 = layer({'other/file': b'x'})
    raw_manifest = registry.add_image(index_ref, layer1, layer2)
    index_dir = os.path.join(workdir, 'catalog-index', 'v1')

    result = mirror.cache.sync_index(
        registry=registry,
        blob_store=blob_store,
        image_reference=index_ref,
        index_dir=index_dir,
        token=None,
    )

    assert result.changed
    assert result.blobs.ok
    # two layers + cfg-blob
    assert len(registry.blob_requests) == 3

    with open(result.manifest_path, 'rb') as f:
        assert f.read() == raw_manifest

    configs_dir = mirror.cache.find_dir(result.cache_dir, 'configs')
    assert configs_dir == os.path.join(
        result.cache_dir,
        json.loads(raw_manifest)['layers'][0]['digest'].removeprefix('sha256:')[:6],
        'configs',
    )
    assert os.path.isfile(os.path.join(configs_dir, 'op', 'catalog.json'))
    assert mirror.cache.find_dir(result.cache_dir, 'release-manifests') is None


def test_sync_index_is_idempotent(registry, blob_store, workdir, layer):
    registry.add_image(index_ref, layer({'configs/op/catalog.json': b'{}'}))
    index_dir = os.path.join(workdir, 'catalog-index', 'v1')

    def sync():
        return mirror.cache.sync_index(
            registry=registry,
            blob_store=blob_store,
            image_reference=index_ref,
            index_dir=index_dir,
            token=None,
            queued=oc.QueuedDigests(),
        )

    sync()
    blob_requests = list(registry.blob_requests)
    tree = _tree(workdir)
    mtime = os.stat(os.path.join(index_dir, 'manifest.json')).st_mtime_ns

    result = sync()

    assert not result.changed
    assert result.blobs is None
    assert registry.blob_requests == blob_requests
    assert _tree(workdir) == tree
    assert os.stat(os.path.join(index_dir, 'manifest.json')).st_mtime_ns == mtime


def test_sync_index_invalidates_cache(registry, blob_store, workdir, layer):
    old_layer = layer({'configs/op/catalog.json': b'{"old": true}'})
    registry.add_image(index_ref, old_layer)
    index_dir = os.path.join(workdir, 'catalog-index', 'v1')

    first = mirror.cache.sync_index(
        registry=registry,
        blob_store=blob_store,
        image_reference=index_ref,
        index_dir=index_dir,
        token=None,
    )
    # leftovers must be purged
    stale_file = os.path.join(first.cache_dir, 'stale')
    with open(stale_file, 'w') as f:
        f.write('stale')

    new_layer = layer({'configs/op/catalog.json': b'{"new": true}'})
    new_manifest = registry.add_image(index_ref, new_layer, config=b'{"new": true}')
    registry.blob_requests.clear()

    result = mirror.cache.sync_index(
        registry=registry,
        blob_store=blob_store,
        image_reference=index_ref,
        index_dir=index_dir,
        token=None,
    )

    assert result.changed
    assert not os.path.exists(stale_file)
    # new layer and new cfg-blob
    assert sorted(registry.blob_requests) == sorted(
        blob['digest'] for blob in (
            json.loads(new_manifest)['config'],
            *json.loads(new_manifest)['layers'],
        )
    )
    assert os.listdir(result.cache_dir) == [
        json.loads(new_manifest)['layers'][0]['digest'].removeprefix('sha256:')[:6],
    ]
    with open(result.manifest_path, 'rb') as f:
        assert f.read() == new_manifest


def test_sync_index_missing_cache_dir_resyncs(registry, blob_store, workdir, layer):
    registry.add_image(index_ref, layer({'configs/op/catalog.json': b'{}'}))
    index_dir = os.path.join(workdir, 'catalog-index', 'v1')

    first = mirror.cache.sync_index(registry, blob_store, index_ref, index_dir, token=None)
    os.rename(first.cache_dir, first.cache_dir + '.bak')

    result = mirror.cache.sync_index(registry, blob_store, index_ref, index_dir, token=None)

    assert result.changed
    assert mirror.cache.find_dir(result.cache_dir, 'configs')


def test_sync_index_w_manifest_list(registry, blob_store, workdir, layer):
    amd64_layer = layer({'release-manifests/image-references': b'{}'})
    arm64_layer = layer({'release-manifests/image-references': b'{"arm": 1}'})

    amd64 = registry.add_image('registry.example.org/ns/release:amd64', amd64_layer)
    arm64 = registry.add_image('registry.example.org/ns/release:arm64', arm64_layer)
    registry.add_manifest_list(index_ref, {'arm64': arm64, 'amd64': amd64})

    result = mirror.cache.sync_index(
        registry=registry,
        blob_store=blob_store,
        image_reference=index_ref,
        index_dir=os.path.join(workdir, 'catalog-index', 'v1'),
        token=None,
    )

    # only blobs of the default platform are retrieved
    assert len(registry.blob_requests) == 2
    release_manifests = mirror.cache.find_dir(result.cache_dir, 'release-manifests')
    with open(os.path.join(release_manifests, 'image-references'), 'rb') as f:
        assert f.read() == b'{}'


def test_sync_index_fails_for_missing_index(registry, blob_store, workdir):
    with pytest.raises(om.TransportError):
        mirror.cache.sync_index(
            registry=registry,
            blob_store=blob_store,
            image_reference=index_ref,
            index_dir=os.path.join(workdir, 'catalog-index', 'v1'),
            token=None,
        )


def test_sync_index_does_not_persist_incomplete_index(registry, blob_store, workdir, layer):
    raw = registry.add_image(index_ref, layer({'configs/x': b'x'}))
    missing = json.loads(raw)['layers'][0]['digest']
    del registry.blobs[missing]

    result = mirror.cache.sync_index(
        registry=registry,
        blob_store=blob_store,
        image_reference=index_ref,
        index_dir=os.path.join(workdir, 'catalog-index', 'v1'),
        token=None,
    )

    assert list(result.blobs.failed) == [missing]
    assert not os.path.exists(result.manifest_path)
