import datetime
import hashlib
import json
import os
import tarfile

import pytest

import mirror.diff
import oci.model as om


def _digest(octets: bytes) -> str:
    return f'sha256:{hashlib.sha256(octets).hexdigest()}'


def _mirror_image(workdir, blob_store, relpath: str, *blobs: bytes) -> list[str]:
    '''
    mimics a mirrored single-image (manifest + blobs), returns hexdigests of all blobs
    '''
    config, *layers = [
        {'mediaType': 'application/octet-stream', 'digest': _digest(blob), 'size': len(blob)}
        for blob in blobs
    ]
    for blob in blobs:
        blob_store.write(_digest(blob), blob)

    target_dir = os.path.join(workdir, relpath)
    os.makedirs(target_dir, exist_ok=True)
    with open(os.path.join(target_dir, 'manifest.json'), 'w') as f:
        json.dump({
            'schemaVersion': 2,
            'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
            'config': config,
            'layers': layers,
        }, f)

    return [_digest(blob).removeprefix('sha256:') for blob in blobs]


def test_parse_date():
    parsed = mirror.diff.parse_date('2024/02/29')

    assert parsed == datetime.datetime(2024, 2, 29, tzinfo=datetime.timezone.utc)

    for malformed in ('2024-02-29', '2024/13/01', 'yesterday', ''):
        with pytest.raises(ValueError):
            mirror.diff.parse_date(malformed)


def test_metadata_dirs(workdir, blob_store):
    _mirror_image(workdir, blob_store, 'op-index/v1/operators/op/stable', b'c1', b'l1')
    _mirror_image(workdir, blob_store, 'ocp/4.14/release/etcd', b'c2', b'l2')
    # neither `operators` nor `release` in path
    _mirror_image(workdir, blob_store, 'additional/ubi8/latest', b'c3', b'l3')
    # no manifest
    os.makedirs(os.path.join(workdir, 'op-index/v1/operators/empty'))
    # cache-directories are never walked
    _mirror_image(workdir, blob_store, 'op-index/v1/cache/abcdef/release', b'c4', b'l4')

    assert mirror.diff.metadata_dirs(workdir) == {
        'op-index/v1/operators/op/stable',
        'ocp/4.14/release/etcd',
    }


def test_since_last_run(workdir, blob_store, tmp_path):
    _mirror_image(workdir, blob_store, 'idx/v1/operators/a/stable', b'ca', b'la')
    strategy = mirror.diff.SinceLastRun(workdir)

    b_blobs = _mirror_image(workdir, blob_store, 'idx/v1/operators/b/stable', b'cb', b'lb')
    c_blobs = _mirror_image(workdir, blob_store, 'idx/v1/operators/c/stable', b'cc', b'lc')

    assert strategy.touched() == {
        'idx/v1/operators/b/stable',
        'idx/v1/operators/c/stable',
    }

    tar_file = str(tmp_path / 'diff.tar.gz')
    result = mirror.diff.build_diff_archive(
        strategy=strategy,
        tar_file=tar_file,
        workdir=workdir,
        blob_store=blob_store,
        config='kind: ImageSetConfiguration\n',
    )

    assert result == tar_file
    with tarfile.open(tar_file, mode='r:gz') as tf:
        names = set(tf.getnames())
        isc = tf.extractfile('metadata/isc.yaml').read()

    assert isc == b'kind: ImageSetConfiguration\n'
    assert names == {
        'metadata/isc.yaml',
        'idx/v1/operators/b/stable/manifest.json',
        'idx/v1/operators/c/stable/manifest.json',
        *(f'blobs/{hexdigest}' for hexdigest in b_blobs + c_blobs),
    }


def test_nothing_touched_creates_no_archive(workdir, blob_store, tmp_path):
    _mirror_image(workdir, blob_store, 'idx/v1/operators/a/stable', b'ca', b'la')
    strategy = mirror.diff.SinceLastRun(workdir)

    tar_file = str(tmp_path / 'diff.tar.gz')
    result = mirror.diff.build_diff_archive(
        strategy=strategy,
        tar_file=tar_file,
        workdir=workdir,
        blob_store=blob_store,
        config='',
    )

    assert result is None
    assert not os.path.exists(tar_file)


def test_since_date(workdir, blob_store):
    _mirror_image(workdir, blob_store, 'idx/v1/operators/a/stable', b'ca', b'la')

    assert mirror.diff.SinceDate(workdir, '2000/01/01').touched() == {
        'idx/v1/operators/a/stable',
    }

    tomorrow = datetime.datetime.now(tz=datetime.timezone.utc) + datetime.timedelta(days=2)
    future = mirror.diff.SinceDate(workdir, tomorrow.strftime(mirror.diff.DATE_FORMAT))
    assert future.touched() == set()

    with pytest.raises(ValueError):
        mirror.diff.SinceDate(workdir, '01.01.2000')


def test_missing_blob_fails(workdir, blob_store, tmp_path):
    hexdigests = _mirror_image(workdir, blob_store, 'idx/v1/operators/a/stable', b'ca', b'la')
    os.unlink(blob_store.path(hexdigests[-1]))

    tar_file = str(tmp_path / 'diff.tar.gz')
    with pytest.raises(om.FilesystemError):
        mirror.diff.create_diff_tar(
            tar_file=tar_file,
            workdir=workdir,
            blob_store=blob_store,
            dirs=['idx/v1/operators/a/stable'],
            config='',
        )

    assert not os.path.exists(tar_file)


def test_manifest_lists_reference_no_blobs(workdir, blob_store, tmp_path):
    target_dir = os.path.join(workdir, 'idx/v1/operators/a/stable')
    os.makedirs(target_dir)
    with open(os.path.join(target_dir, 'manifest-list.json'), 'w') as f:
        json.dump({
            'schemaVersion': 2,
            'mediaType': om.DOCKER_MANIFEST_LIST_MIME,
            'manifests': [{
                'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
                'digest': _digest(b'absent'),
                'size': 6,
            }],
        }, f)

    tar_file = mirror.diff.create_diff_tar(
        tar_file=str(tmp_path / 'diff.tar.gz'),
        workdir=workdir,
        blob_store=blob_store,
        dirs=['idx/v1/operators/a/stable'],
        config='',
    )

    with tarfile.open(tar_file) as tf:
        assert tf.getnames() == [
            'metadata/isc.yaml',
            'idx/v1/operators/a/stable/manifest-list.json',
        ]
