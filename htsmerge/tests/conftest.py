import pytest

from htsmerge import htsconfig


@pytest.fixture(autouse=True)
def patch_cfg(monkeypatch):
    """Pin merge settings so a local ~/.htsmerge.ini cannot leak into tests."""
    monkeypatch.setattr(htsconfig.CFG.merge, "compression_level", 1)
    monkeypatch.setattr(htsconfig.CFG.merge, "in_place_reuse", True)
    monkeypatch.setattr(htsconfig.CFG.merge, "check_free_space", False)
    monkeypatch.setattr(htsconfig.CFG.merge, "max_payload_mb", 1024)
