"""
Tests for the stage registry.

Tests cover:
- Registration, lookup and instantiation of stages
- Unknown identifiers and invalid factories
- Builtin stage loading and the global registry
- Registration of the OLCI stages backed by host algorithms
"""

import logging

import pytest

from idepix.analysis.library import (
    StageRegistry,
    get_global_registry,
    load_default_stages,
)
from idepix.analysis.library.olci import (
    ClassificationStage,
    CloudBufferStage,
    Rad2ReflStage,
    cloud_buffer,
    register_olci_stages,
)
from idepix.errors import GraphValidationError


class TestStageRegistry:
    """Tests for StageRegistry."""

    def test_register_and_create(self, algorithms):
        """Test stages are created from their factory."""
        registry = StageRegistry()
        registry.register(Rad2ReflStage.stage_id, lambda: Rad2ReflStage(algorithms.rad2refl))

        stage = registry.create("idepix.olci.rad2refl")

        assert isinstance(stage, Rad2ReflStage)
        assert stage.algorithm == algorithms.rad2refl
        assert registry.has("idepix.olci.rad2refl")

    def test_create_returns_new_instances(self, registry):
        """Test every create() call yields a fresh stage."""
        assert registry.create(Rad2ReflStage.stage_id) is not registry.create(Rad2ReflStage.stage_id)

    def test_unknown_identifier(self):
        """Test unknown identifiers fail at build time."""
        with pytest.raises(GraphValidationError, match="Unknown stage identifier 'idepix.olci.fog'"):
            StageRegistry().create("idepix.olci.fog")

    def test_factory_must_be_callable(self):
        """Test non-callable factories are rejected."""
        with pytest.raises(TypeError):
            StageRegistry().register("idepix.test", "not callable")

    def test_factory_must_return_stage(self):
        """Test factories must produce Stage instances."""
        registry = StageRegistry()
        registry.register("idepix.test", lambda: object())

        with pytest.raises(GraphValidationError, match="expected Stage"):
            registry.create("idepix.test")

    def test_overwrite_warns(self, algorithms, caplog):
        """Test re-registering an identifier replaces it with a warning."""
        registry = StageRegistry()
        registry.register("idepix.test", lambda: Rad2ReflStage(algorithms.rad2refl))

        with caplog.at_level(logging.WARNING):
            registry.register("idepix.test", lambda: CloudBufferStage(cloud_buffer))

        assert "already registered" in caplog.text
        assert isinstance(registry.create("idepix.test"), CloudBufferStage)

    def test_unregister(self, registry):
        """Test unregistering removes the entry."""
        registry.unregister(Rad2ReflStage.stage_id)

        assert not registry.has(Rad2ReflStage.stage_id)
        assert registry.get(Rad2ReflStage.stage_id) is None

    def test_statistics(self, registry):
        """Test registry statistics."""
        stats = registry.get_statistics()

        assert stats == {"total_stages": 4, "builtin": 0, "delegated": 4}

    def test_entry_to_dict(self, registry):
        """Test entry descriptions."""
        entry = registry.get(ClassificationStage.stage_id)

        assert entry.to_dict() == {
            "stage_id": "idepix.olci.classification",
            "description": "OLCI pixel classification",
            "builtin": False,
        }


class TestOlciRegistration:
    """Tests for register_olci_stages()."""

    def test_registers_all_stages(self, registry):
        """Test all four OLCI stages are registered."""
        assert sorted(e.stage_id for e in registry.list_all()) == [
            "idepix.olci.classification",
            "idepix.olci.cloud_buffer",
            "idepix.olci.o2corr",
            "idepix.olci.rad2refl",
        ]

    def test_missing_algorithms_are_skipped(self, algorithms):
        """Test stages without an algorithm are not registered."""
        registry = register_olci_stages(StageRegistry(), classification=algorithms.classification)

        assert sorted(registry.stages) == ["idepix.olci.classification", "idepix.olci.cloud_buffer"]

    def test_each_stage_gets_its_algorithm(self, registry, algorithms):
        """Test factories bind the right algorithm to each stage."""
        assert registry.create(Rad2ReflStage.stage_id).algorithm == algorithms.rad2refl
        assert registry.create(ClassificationStage.stage_id).algorithm == algorithms.classification
        assert registry.create(CloudBufferStage.stage_id).algorithm is cloud_buffer


class TestDefaultStages:
    """Tests for load_default_stages() and the global registry."""

    def test_load_default_stages(self):
        """Test the builtin cloud buffer stage is registered."""
        registry = load_default_stages(StageRegistry())

        entry = registry.get(CloudBufferStage.stage_id)
        assert entry.builtin
        assert registry.get_statistics()["builtin"] == 1
        assert isinstance(registry.create(CloudBufferStage.stage_id), CloudBufferStage)

    def test_global_registry_is_shared(self):
        """Test the global registry is a singleton."""
        assert get_global_registry() is get_global_registry()
