"""Every package imports cleanly on its own."""

import importlib

import pytest


@pytest.mark.parametrize("name", [
    "gateway.common",
    "gateway.services.device",
    "gateway.services.device.registry",
    "gateway.services.ipc",
    "gateway.services.ipc.dispatcher",
    "gateway.main",
])
def test_module_imports(name):
    assert importlib.import_module(name) is not None


def test_registry_lists_supported_protocols():
    from gateway.services.device.registry import DeviceRegistry

    supported = DeviceRegistry.supported_protocols()
    assert supported
    assert DeviceRegistry().list_devices() == []
