"""
htsconfig.py - Configuration for htsmerge

Settings are exposed as ``CFG.<section>.<key>`` attributes. Values come
from built-in defaults, optionally overridden by an ini file found at
``$HTSMERGE_CONFIG`` or ``~/.htsmerge.ini``. Consumers read them with
``getattr`` and a default so tests can swap sections freely.
"""

import configparser
import logging
import os

log = logging.getLogger(__name__)

CONFIG_ENV = "HTSMERGE_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".htsmerge.ini")

DEFAULTS = {
    "general": {
        "log_level": "INFO",
    },
    "merge": {
        # zlib level used when the output cache is compressed
        "compression_level": "1",
        "in_place_reuse": "True",
        "check_free_space": "True",
        # Upper bound for a single inflated payload
        "max_payload_mb": "1024",
    },
}

_TRUE_VALUES = ("true", "yes", "on")
_FALSE_VALUES = ("false", "no", "off")


class SectionParser:
    """Attribute access to one config section with basic type coercion."""

    def __init__(self, name: str, values: dict):
        self._name = name
        for key, value in values.items():
            setattr(self, key, self._coerce(value))

    @staticmethod
    def _coerce(value: str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        try:
            return int(lowered)
        except ValueError:
            return value.strip()

    def __repr__(self):
        items = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}
        return f"SectionParser({self._name}, {items})"


class HtsConfig:
    """Holds every config section as a ``SectionParser`` attribute."""

    def __init__(self, conf_file: str = None):
        self.conf_file = conf_file or os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH)
        self.load()

    def load(self) -> None:
        parser = configparser.ConfigParser()
        parser.read_dict(DEFAULTS)
        if self.conf_file and os.path.isfile(self.conf_file):
            try:
                parser.read(self.conf_file, encoding="utf-8")
                log.debug(f"Loaded config from {self.conf_file}")
            except configparser.Error as e:
                log.warning(f"Ignoring unreadable config {self.conf_file}: {e}")
        for section in parser.sections():
            setattr(self, section, SectionParser(section, dict(parser.items(section))))


CFG = HtsConfig()


def merge_settings():
    """Return (compression_level, in_place_reuse, check_free_space, max_payload_bytes)."""
    section = getattr(CFG, "merge", None)
    level = int(getattr(section, "compression_level", 1))
    level = max(1, min(9, level))
    in_place = bool(getattr(section, "in_place_reuse", True))
    check_free = bool(getattr(section, "check_free_space", True))
    max_payload_mb = int(getattr(section, "max_payload_mb", 1024))
    max_payload_mb = max(1, max_payload_mb)
    return level, in_place, check_free, max_payload_mb * 1024 * 1024
