"""Pytest configuration and fixtures for the Subtitle Translator tests."""

import tempfile

import pytest

from tests.fakes import FakeTransport, make_track


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def track():
    return make_track(10)


@pytest.fixture
def sample_srt(temp_dir):
    """Write a small SRT file and return its path."""
    path = f"{temp_dir}/sample.srt"
    with open(path, 'w', encoding='utf-8') as f:
        f.write(
            "1\n00:00:01,000 --> 00:00:02,500\nHello there.\n\n"
            "2\n00:00:03,000 --> 00:00:04,000\nHow are you?\n\n"
            "3\n00:00:05,000 --> 00:00:06,200\nSee you tomorrow.\n"
        )
    return path
