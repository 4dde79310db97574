"""Tests for package exports."""

import dashsync


def test_public_api_importable() -> None:
    """Test that the main entry points are importable from the package root."""
    from dashsync import (
        AnalyticsResource,
        QueryCache,
        ReportsResource,
        RetryCoordinator,
        SyncContext,
        resolve,
        tag,
    )

    # Just verify they're importable
    assert SyncContext is not None
    assert QueryCache is not None
    assert RetryCoordinator is not None
    assert AnalyticsResource is not None
    assert ReportsResource is not None
    assert resolve is not None
    assert tag is not None


def test_all_names_resolve() -> None:
    missing = [name for name in dashsync.__all__ if not hasattr(dashsync, name)]
    assert missing == []


def test_version() -> None:
    assert dashsync.__version__ == "0.1.0"
