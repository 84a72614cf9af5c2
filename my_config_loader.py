from copy import deepcopy
from json import load
from os import environ, path
from singleton_type import SingletonType

####################################################################
#       CONFIGURATION                                              #
####################################################################
BASE_PATH = path.dirname(path.abspath(__file__))
CONFIG_ENV_VAR = "PDFSIG_CONFIG"
JSON_CONFIG_FILE = path.join(BASE_PATH, "pdfsig_config.json")
DEFAULT_CONFIG = {
    "logger": {
        "log_folder": None,
        "log_file_name": "pdfsig.log",
        "file_byte_size": 1048576,
        "log_files_count": 5,
        "level": "INFO",
    },
    "signer": {
        "pfx_path": "signature.pfx",
        "subject": "CN=Test Certificate, OU=Development, O=My Company, C=US",
        "key_size": 2048,
        "validity_days": 365,
        "digest_algorithm": "sha256",
        "placeholder_size": None,
        "signed_attributes": True,
        "verify_after_sign": True,
        "allow_expired_certificate": False,
    },
    "pdf_conf": {
        "visibility": "visible",
        "position": {"page": "1", "rect": [100, 100, 200, 100]},
        "reason": "Test Signature",
        "location": "Virtual Office",
        "subfilter": "adbe.pkcs7.detached",
    },
    "smart_card": {
        "driver_folder": None,
    },
}
####################################################################


def _merge(base, override):
    ''' Recursively merge `override` into a copy of `base` '''
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_file):
    '''
        Return the configuration found in `config_file` merged over the defaults

        Relative folder and path entries are resolved against the directory
        of the config file. A missing file yields the defaults.
    '''
    if not config_file or not path.isfile(config_file):
        return deepcopy(DEFAULT_CONFIG)

    with open(config_file) as _file:
        config = _merge(DEFAULT_CONFIG, load(_file))

    config_dir = path.dirname(path.abspath(config_file))
    for group in config.values():
        if not isinstance(group, dict):
            continue
        for item, value in group.items():
            if (item.endswith("_folder") or item.endswith("_path")) \
                    and isinstance(value, str) and not path.isabs(value):
                group[item] = path.join(config_dir, value)
    return config


class MyConfigLoader(object, metaclass=SingletonType):
    _config = None

    def __init__(self):
        self._config = load_config(environ.get(CONFIG_ENV_VAR, JSON_CONFIG_FILE))

    def get_logger_config(self):
        return self._config["logger"]

    def get_signer_config(self):
        return self._config["signer"]

    def get_pdf_config(self):
        return self._config["pdf_conf"]

    def get_smart_card_config(self):
        return self._config["smart_card"]
