"""
Tests for the logging processors.
"""
from kubedb_operator.config.logging import operator_context
from kubedb_operator.config.settings import Settings


def test_operator_context_stamps_identity():
    processor = operator_context(Settings(_env_file=None, watch_namespace="databases"))

    event = processor(None, "info", {"event": "reconcile_succeeded"})

    assert event["operator"] == "kubedb-operator"
    assert event["watch_scope"] == "databases"
    assert event["environment"] == "development"


def test_operator_context_keeps_explicit_fields():
    processor = operator_context(Settings(_env_file=None))

    event = processor(None, "info", {"event": "x", "version": "custom"})

    assert event["version"] == "custom"
    assert event["watch_scope"] == "*"
