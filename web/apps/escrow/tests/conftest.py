import pytest

from .factories import build_world


@pytest.fixture
def world():
    return build_world()
