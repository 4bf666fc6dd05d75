"""Test that the project setup is working correctly."""

import launchpad_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert launchpad_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from launchpad_indexer import aggregator
    from launchpad_indexer import chain
    from launchpad_indexer import classifier
    from launchpad_indexer import lease
    from launchpad_indexer import ledger
    from launchpad_indexer import orchestrator
    from launchpad_indexer import pools
    from launchpad_indexer import pricing
    from launchpad_indexer import reconciler
    from launchpad_indexer import scanner
    from launchpad_indexer import storage

    # Just verify imports work
    assert aggregator is not None
    assert chain is not None
    assert classifier is not None
    assert lease is not None
    assert ledger is not None
    assert orchestrator is not None
    assert pools is not None
    assert pricing is not None
    assert reconciler is not None
    assert scanner is not None
    assert storage is not None
