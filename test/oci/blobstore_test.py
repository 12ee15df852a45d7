import hashlib
import os

import pytest

import oci.blobstore
import oci.model as om


def _digest(octets: bytes) -> str:
    return f'sha256:{hashlib.sha256(octets).hexdigest()}'


def test_path_is_sharded(tmp_path):
    store = oci.blobstore.BlobStore(str(tmp_path))
    digest = _digest(b'foo')
    hexdigest = digest.removeprefix('sha256:')

    assert store.path(digest) == os.path.join(tmp_path, hexdigest[:2], hexdigest)
    # algorithm-prefix is optional
    assert store.path(hexdigest) == store.path(digest)


def test_write_and_read(tmp_path):
    store = oci.blobstore.BlobStore(str(tmp_path))
    digest = _digest(b'foobar')

    assert not store.exists(digest)

    path = store.write(digest, [b'foo', b'bar'], verify=True)

    assert path == store.path(digest)
    assert store.exists(digest)
    assert store.exists(digest, verify=True)
    assert store.read(digest) == b'foobar'
    assert store.size(digest) == 6

    # no leftover temporary files
    assert os.listdir(store.shard_dir(digest)) == [os.path.basename(path)]


def test_verified_write_rejects_mismatch(tmp_path):
    store = oci.blobstore.BlobStore(str(tmp_path))
    digest = _digest(b'expected')

    with pytest.raises(om.DigestMismatchError):
        store.write(digest, b'unexpected', verify=True)

    assert not store.exists(digest)
    assert os.listdir(store.shard_dir(digest)) == []

    # w/o verification, contents are not checked
    store.write(digest, b'unexpected')
    assert store.exists(digest)
    assert not store.exists(digest, verify=True)


def test_open_missing_blob(tmp_path):
    store = oci.blobstore.BlobStore(str(tmp_path))

    with pytest.raises(om.FilesystemError):
        store.read(_digest(b'absent'))
