'''
on-disk, content-addressed cache of blobs

blobs are stored as `<root>/<first two hex-chars>/<hex>`, where `hex` is the digest w/o
algorithm-prefix. The two-character prefix shards the store into (at most) 256 directories.
'''
import collections.abc
import contextlib
import hashlib
import logging
import os
import tempfile
import typing

import oci.model as om
import oci.util

logger = logging.getLogger(__name__)


def _iter_chunks(
    data: bytes | collections.abc.Iterable[bytes] | typing.BinaryIO,
    chunk_size: int=1024 * 1024,
) -> collections.abc.Generator[bytes, None, None]:
    if isinstance(data, (bytes, bytearray)):
        yield bytes(data)
    elif hasattr(data, 'read'):
        while (chunk := data.read(chunk_size)):
            yield chunk
    else:
        yield from data


class BlobStore:
    def __init__(self, root: str):
        self.root = root

    def shard_dir(self, digest: str) -> str:
        hexdigest = oci.util.hexdigest(digest)
        if len(hexdigest) < 2:
            raise ValueError(f'not a valid digest: {digest=}')

        return os.path.join(self.root, hexdigest[:2])

    def path(self, digest: str) -> str:
        return os.path.join(
            self.shard_dir(digest),
            oci.util.hexdigest(digest),
        )

    def exists(self, digest: str, verify: bool=False) -> bool:
        '''
        checks whether the blob w/ the given digest is present. By default, only the existence of
        the file is checked. If `verify` is truthy, the file's content is hashed and compared
        against the expected digest (which is only supported for sha256-digests).
        '''
        path = self.path(digest)
        if not os.path.isfile(path):
            return False

        if not verify:
            return True

        sha256 = hashlib.sha256()
        with open(path, 'rb') as f:
            while (chunk := f.read(1024 * 1024)):
                sha256.update(chunk)

        if sha256.hexdigest() == oci.util.hexdigest(digest):
            return True

        logger.warning(f'{digest=} is present, but content does not match - treating as absent')
        return False

    def write(
        self,
        digest: str,
        data: bytes | collections.abc.Iterable[bytes] | typing.BinaryIO,
        verify: bool=False,
    ) -> str:
        '''
        stores the given data as blob w/ the given digest; returns the path of the stored blob.

        data is written to a temporary file inside the shard-directory first, which is then
        renamed to its final name (so readers will never see partially written blobs).
        '''
        shard_dir = self.shard_dir(digest)
        path = self.path(digest)

        try:
            os.makedirs(shard_dir, exist_ok=True)
        except OSError as oe:
            raise om.FilesystemError(f'could not create {shard_dir=}: {oe}') from oe

        sha256 = hashlib.sha256()
        try:
            fd, tmp_path = tempfile.mkstemp(dir=shard_dir, prefix='.tmp-')
        except OSError as oe:
            raise om.FilesystemError(f'could not create temporary file in {shard_dir=}: {oe}') from oe

        try:
            with os.fdopen(fd, 'wb') as f:
                for chunk in _iter_chunks(data):
                    sha256.update(chunk)
                    f.write(chunk)

            if verify and not sha256.hexdigest() == oci.util.hexdigest(digest):
                raise om.DigestMismatchError(
                    f'{digest=} does not match received content (sha256:{sha256.hexdigest()})'
                )

            os.replace(tmp_path, path)
        except OSError as oe:
            raise om.FilesystemError(f'could not write blob to {path=}: {oe}') from oe
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.debug(f'wrote blob {digest=} to {path=}')
        return path

    @contextlib.contextmanager
    def open(self, digest: str) -> collections.abc.Generator[typing.BinaryIO, None, None]:
        path = self.path(digest)
        try:
            f = open(path, 'rb')
        except OSError as oe:
            raise om.FilesystemError(f'could not open blob {digest=} at {path=}: {oe}') from oe

        with f:
            yield f

    def read(self, digest: str) -> bytes:
        with self.open(digest) as f:
            return f.read()

    def size(self, digest: str) -> int:
        try:
            return os.path.getsize(self.path(digest))
        except OSError as oe:
            raise om.FilesystemError(f'could not stat blob {digest=}: {oe}') from oe
