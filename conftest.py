"""Pytest configuration: custom markers and shared fixtures."""
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--gpu", action="store_true", default=False,
        help="Run GPU tests even when CUDA detection fails (torch backend)",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "gpu: mark test as needing torch with a CUDA device"
    )


def _cuda_available() -> bool:
    try:
        import torch
    except ImportError:
        return False
    return bool(torch.cuda.is_available())


def pytest_collection_modifyitems(config, items):
    if config.getoption("--gpu") or _cuda_available():
        return
    skip_gpu = pytest.mark.skip(reason="needs torch with CUDA (or --gpu option) to run")
    for item in items:
        if "gpu" in item.keywords:
            item.add_marker(skip_gpu)
