"""
Tests for error classification and Result.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

import pytest


def test_classification():
    from core.errors import (
        ErrorKind,
        HybridSearchError,
        PoolTimeoutError,
        ProviderRateLimitError,
        QueryTimeoutError,
        StoreUnavailableError,
        classify_error,
    )

    for exc in (
        StoreUnavailableError("down"),
        QueryTimeoutError("slow"),
        PoolTimeoutError("busy"),
        ProviderRateLimitError("later", retry_after=3),
        asyncio.TimeoutError(),
        ConnectionResetError(),
    ):
        assert classify_error(exc) == ErrorKind.TRANSIENT, exc

    assert classify_error(HybridSearchError({"keyword": ValueError("x")})) == ErrorKind.PARTIAL
    assert classify_error(ValueError("bad")) == ErrorKind.FATAL
    assert classify_error(KeyError("missing")) == ErrorKind.FATAL


def test_hybrid_search_error_lists_paths():
    from core.errors import HybridSearchError

    error = HybridSearchError({"keyword": ValueError("x"), "semantic": TimeoutError()})
    assert error.details["paths"] == ["keyword", "semantic"]
    assert "keyword" in str(error) and "semantic" in str(error)


def test_result():
    from core.errors import ErrorKind, Result, StoreUnavailableError

    ok = Result.success(5)
    assert ok.ok and ok.unwrap() == 5

    failed = Result.failure(StoreUnavailableError("down"), value=0)
    assert not failed.ok
    assert failed.kind == ErrorKind.TRANSIENT
    assert failed.value == 0
    with pytest.raises(StoreUnavailableError):
        failed.unwrap()
