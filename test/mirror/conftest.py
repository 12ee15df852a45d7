import io
import json
import os
import tarfile

import pytest

import oci.blobstore
import oci.client as oc
import oci.model as om
import oci.util


class FakeRegistry:
    '''
    in-memory registry (implementing `oci.client.RegistryInterface`); records all retrievals
    '''
    def __init__(self):
        self.manifests = {} # {url: raw}
        self.blobs = {} # {digest: octets}
        self.manifest_requests = []
        self.blob_requests = []
        self.pushed = []
        self.routes = oc.OciRoutes()

    def add_blob(self, octets: bytes) -> dict:
        digest = oci.util.sha256_digest(octets)
        self.blobs[digest] = octets
        return {
            'mediaType': 'application/vnd.oci.image.layer.v1.tar',
            'digest': digest,
            'size': len(octets),
        }

    def add_manifest(self, image_reference: str, manifest: dict | bytes) -> bytes:
        if isinstance(manifest, dict):
            manifest = json.dumps(manifest).encode('utf-8')
        self.manifests[self.routes.manifest_url(image_reference)] = manifest
        return manifest

    def add_image(self, image_reference: str, *layers: bytes, config=b'{}') -> bytes:
        return self.add_manifest(
            image_reference,
            {
                'schemaVersion': 2,
                'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
                'config': self.add_blob(config),
                'layers': [self.add_blob(layer) for layer in layers],
            },
        )

    def add_manifest_list(self, image_reference: str, platforms: dict[str, bytes]) -> bytes:
        ref = om.OciImageReference(image_reference)
        entries = []
        for architecture, raw in platforms.items():
            digest = oci.util.sha256_digest(raw)
            self.add_manifest(str(ref.with_tag(digest)), raw)
            entries.append({
                'mediaType': om.OCI_MANIFEST_SCHEMA_V2_MIME,
                'digest': digest,
                'size': len(raw),
                'platform': {'architecture': architecture, 'os': 'linux'},
            })

        return self.add_manifest(
            image_reference,
            {
                'schemaVersion': 2,
                'mediaType': om.DOCKER_MANIFEST_LIST_MIME,
                'manifests': entries,
            },
        )

    def fetch_manifest(self, url, token, accept=om.OCI_MANIFEST_SCHEMA_V2_MIME) -> bytes:
        self.manifest_requests.append(url)
        if not url in self.manifests:
            raise om.TransportError(f'not found: {url=}', url=url, status_code=404)
        return self.manifests[url]

    def fetch_blobs(self, blob_store, base_url, token, layers, queued=None):
        result = oc.BlobFetchResult()
        seen = set()

        for layer in layers:
            if layer.hexdigest in seen:
                continue
            seen.add(layer.hexdigest)

            if blob_store.exists(layer.digest):
                result.present.append(layer.digest)
                continue
            if queued is not None and not queued.claim(layer.digest):
                result.skipped.append(layer.digest)
                continue

            self.blob_requests.append(layer.digest)
            if not layer.digest in self.blobs:
                result.failed[layer.digest] = 'not found'
                if queued is not None:
                    queued.release(layer.digest)
                continue

            blob_store.write(layer.digest, self.blobs[layer.digest])
            result.fetched.append(layer.digest)

        return result

    def push_image(self, blob_store, sub_component, dest_url, manifest, token=None):
        parsed = om.as_manifest(manifest)
        for blob in parsed.blobs():
            if not blob_store.exists(blob.digest):
                raise om.PushError(f'missing {blob.digest=}', failed={blob.digest: 'missing'})

        self.pushed.append((dest_url, sub_component, manifest))
        return oc.PushResult(
            manifest_url=f'{dest_url}/{sub_component}',
            manifest_digest=oci.util.sha256_digest(manifest),
        )


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def workdir(tmp_path):
    workdir = tmp_path / 'working-dir'
    workdir.mkdir()
    return str(workdir)


@pytest.fixture
def blob_store(workdir):
    return oci.blobstore.BlobStore(os.path.join(workdir, 'blobs-store'))


@pytest.fixture
def layer():
    '''
    returns a function creating a tar-archive (w/ the given files) as octets
    '''
    def _layer(files: dict[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode='w') as tf:
            for name, octets in files.items():
                tarinfo = tarfile.TarInfo(name=name)
                tarinfo.size = len(octets)
                tf.addfile(tarinfo, io.BytesIO(octets))
        return buf.getvalue()

    return _layer
