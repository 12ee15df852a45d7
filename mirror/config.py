import logging

import dacite
import yaml

import mirror.model as mm

logger = logging.getLogger(__name__)

IMAGE_SET_CONFIG_KIND = 'ImageSetConfiguration'


def parse_config(text: str) -> mm.ImageSetConfig:
    '''
    parses the given image-set-configuration (yaml); raises ValueError if it is malformed, or
    not of kind `ImageSetConfiguration`
    '''
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as ye:
        raise ValueError(f'image-set-configuration is not valid yaml: {ye}') from ye

    if not isinstance(raw, dict):
        raise ValueError(f'expected image-set-configuration to be an object, got {type(raw)=}')

    if (kind := raw.get('kind')) != IMAGE_SET_CONFIG_KIND:
        raise ValueError(f'expected {IMAGE_SET_CONFIG_KIND=}, got {kind=}')

    # null-valued lists are handled as if they were absent
    mirror_raw = raw.get('mirror') or {}
    mirror_raw = {k: v for k, v in mirror_raw.items() if v is not None}

    try:
        return dacite.from_dict(
            data_class=mm.ImageSetConfig,
            data={**raw, 'mirror': mirror_raw},
        )
    except dacite.DaciteError as de:
        raise ValueError(f'malformed image-set-configuration: {de}') from de


def load_config(path: str) -> tuple[mm.ImageSetConfig, str]:
    '''
    returns the parsed image-set-configuration read from the given path, along w/ its raw
    contents (which are added to diff-archives)
    '''
    with open(path) as f:
        text = f.read()

    config = parse_config(text)
    logger.debug(f'image set config operators {config.mirror.operators}')

    return config, text
