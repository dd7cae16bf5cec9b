"""Shared pytest markers and env-var-based skip logic."""

import os

import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "e2e: needs a live MQTT broker (SERIALTOMQTT_TEST_BROKER=tcp://host:port)"
    )


def pytest_collection_modifyitems(config, items):
    # e2e is opt-in; point SERIALTOMQTT_TEST_BROKER at a broker to enable
    for item in items:
        if "e2e" in item.keywords and not os.environ.get("SERIALTOMQTT_TEST_BROKER"):
            item.add_marker(
                pytest.mark.skip(reason="Set SERIALTOMQTT_TEST_BROKER to run")
            )
