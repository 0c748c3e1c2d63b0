import io
import logging

import pytest

from eksforge.logging import OutputSink
from eksforge.tests.fakes import FakeKube, FakeProvider


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def sink(stream):
    return OutputSink(logger=logging.getLogger("eksforge.tests"), stream=stream)
