import pytest

import mirror.config
import mirror.model as mm

isc = '''
kind: ImageSetConfiguration
apiVersion: mirror.openshift.io/v1alpha2
mirror:
  release: quay.io/openshift-release-dev/ocp-release:4.14.1-x86_64
  operators:
  - catalog: registry.redhat.io/redhat/redhat-operator-index:v4.14
    packages:
    - name: aws-load-balancer-operator
      channels:
      - name: stable-v1
        minVersion: 1.0.0
    - name: node-observability-operator
  additionalImages:
  - name: registry.redhat.io/ubi8/ubi:latest
'''


def test_parse_config():
    config = mirror.config.parse_config(isc)

    assert config.kind == 'ImageSetConfiguration'
    assert config.mirror.release == 'quay.io/openshift-release-dev/ocp-release:4.14.1-x86_64'

    operator, = config.mirror.operators
    assert operator.catalog == 'registry.redhat.io/redhat/redhat-operator-index:v4.14'
    assert operator.packages == [
        mm.Package(
            name='aws-load-balancer-operator',
            channels=[mm.IncludeChannel(name='stable-v1', minVersion='1.0.0')],
        ),
        mm.Package(name='node-observability-operator'),
    ]

    assert config.mirror.additionalImages == [mm.Image(name='registry.redhat.io/ubi8/ubi:latest')]


def test_parse_config_w_null_values():
    config = mirror.config.parse_config('''
kind: ImageSetConfiguration
apiVersion: mirror.openshift.io/v1alpha2
mirror:
  release:
  operators:
  additionalImages:
  - name: registry.redhat.io/ubi8/ubi:latest
''')

    assert config.mirror.release is None
    assert config.mirror.operators == []
    assert len(config.mirror.additionalImages) == 1


def test_parse_config_rejects_malformed():
    with pytest.raises(ValueError):
        mirror.config.parse_config(isc.replace('ImageSetConfiguration', 'ConfigMap'))

    with pytest.raises(ValueError):
        mirror.config.parse_config('kind: [')

    with pytest.raises(ValueError):
        mirror.config.parse_config('- a list')

    # catalog is required
    with pytest.raises(ValueError):
        mirror.config.parse_config(isc.replace('catalog:', 'index:'))


def test_load_config(tmp_path):
    path = tmp_path / 'isc.yaml'
    path.write_text(isc)

    config, text = mirror.config.load_config(str(path))

    assert text == isc
    assert config == mirror.config.parse_config(isc)
