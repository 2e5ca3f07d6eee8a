import os

import pytest

from bgplab.engine import BgpEngine
from bgplab.utils.config import EngineConfig

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LAB_DIR = os.path.join(BASE_DIR, "etc", "labs")


@pytest.fixture
def engine():
    return BgpEngine(EngineConfig())


@pytest.fixture
def lab_dir():
    return LAB_DIR
