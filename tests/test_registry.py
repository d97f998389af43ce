"""
test_registry.py
~~~~~~~~~~~~~~~~

Tests for the model registry: lifecycle, training, persistence
orchestration and per-model mutual exclusion.
"""

import sqlite3
import threading

import numpy as np
import pytest

from fannstore.cancellation import CancellationToken
from fannstore.codec import encode_weights
from fannstore.errors import (
    Cancelled,
    DimensionMismatch,
    DuplicateName,
    EmptyDataset,
    InvalidSpec,
    ModelBusy,
    NotFound,
    PersistenceFailure,
    Untrained,
)
from fannstore.models import ModelSpec, ModelState
from fannstore.network import TrainingOptions, initialize
from fannstore.persistence import SQLiteAdapter
from fannstore.registry import ModelRegistry, RegistryConfig

from conftest import IDENTITY_EXAMPLES


def _add_identity_examples(registry, name="identity"):
    for x, y in IDENTITY_EXAMPLES:
        registry.add_example(name, x, y)


@pytest.mark.unit
class TestAddAndLookup:
    """Test registering and looking up models."""

    def test_add_persists_spec(self, registry, adapter, identity_spec):
        model = registry.add(identity_spec)

        assert model.state == ModelState.LOADED
        assert model.weights is None
        assert "identity" in registry
        assert len(registry) == 1
        assert adapter.get_all_specs()[0]['model_id'] == identity_spec.model_id

    def test_duplicate_name_rejected(self, registry, identity_spec):
        """Test that a duplicate add fails without touching the existing entry."""
        original = registry.add(identity_spec)
        duplicate = ModelSpec(name="identity", layers=[4, 4, 4])

        with pytest.raises(DuplicateName) as exc_info:
            registry.add(duplicate)

        assert exc_info.value.model == "identity"
        assert registry.get("identity") is original
        assert registry.get("identity").spec.layers == (2, 3, 2)
        assert len(registry.adapter.get_all_specs()) == 1

    def test_invalid_spec_never_reaches_registry(self, registry):
        with pytest.raises(InvalidSpec):
            registry.add(ModelSpec(name="bad", layers=[2, 1]))
        assert len(registry) == 0

    def test_get_unknown_raises(self, registry):
        with pytest.raises(NotFound) as exc_info:
            registry.get("missing")
        assert exc_info.value.model == "missing"

    def test_list_models(self, registry):
        registry.add(ModelSpec(name="b", layers=[2, 3, 1]))
        registry.add(ModelSpec(name="a", layers=[3, 4, 2]))

        listing = registry.list_models()

        assert [m['name'] for m in listing] == ["a", "b"]
        assert listing[0]['layers'] == [3, 4, 2]
        assert listing[0]['trained'] is False

    def test_failed_spec_write_does_not_register(self, tmp_path):
        class FailingAdapter(SQLiteAdapter):
            def put_spec(self, spec, timeout=None):
                raise PersistenceFailure("disk full", operation='put_spec')

        registry = ModelRegistry(FailingAdapter(str(tmp_path / "db.sqlite")))
        with pytest.raises(PersistenceFailure):
            registry.add(ModelSpec(name="m", layers=[2, 3, 1]))
        assert "m" not in registry


@pytest.mark.unit
class TestRunAndExamples:
    """Test running models and recording examples."""

    def test_run_untrained_raises(self, registry):
        registry.add(ModelSpec(name="m", layers=[2, 3, 1], error_target=0.01, max_epochs=100))

        with pytest.raises(Untrained) as exc_info:
            registry.run("m", [0.0, 1.0])
        assert exc_info.value.model == "m"

    def test_run_unknown_raises(self, registry):
        with pytest.raises(NotFound):
            registry.run("missing", [0.0])

    def test_run_wrong_width_raises(self, trained_registry):
        with pytest.raises(DimensionMismatch):
            trained_registry.run("identity", [1.0, 0.0, 0.0])

    @pytest.mark.parametrize("bad_input", [["a", "b"], [[1.0, 2.0], [3.0]]])
    def test_run_non_numeric_input_raises(self, trained_registry, bad_input):
        with pytest.raises(DimensionMismatch) as exc_info:
            trained_registry.run("identity", bad_input)
        assert exc_info.value.model == "identity"

    def test_add_example_unknown_model(self, registry):
        with pytest.raises(NotFound):
            registry.add_example("missing", [0, 1], [1])

    def test_add_example_validates_widths(self, registry, identity_spec):
        registry.add(identity_spec)

        with pytest.raises(DimensionMismatch):
            registry.add_example("identity", [0, 1], [1])
        assert len(registry.examples("identity")) == 0

    def test_add_and_clear_examples(self, registry, identity_spec):
        registry.add(identity_spec)
        example = registry.add_example("identity", [0, 1], [0, 1], raw_data={'id': 1})

        assert list(registry.examples("identity")) == [example]
        assert registry.clear_examples("identity") == 1
        assert registry.clear_examples("identity") == 0


@pytest.mark.integration
class TestTrain:
    """Test training through the registry."""

    def test_train_reaches_target_and_persists(self, registry, adapter, identity_spec):
        registry.add(identity_spec)
        _add_identity_examples(registry)

        error = registry.train("identity")

        model = registry.get("identity")
        assert error <= identity_spec.error_target
        assert model.state == ModelState.TRAINED
        assert model.final_error == error
        assert model.trained_count == 1
        assert adapter.get_weights(identity_spec.model_id) is not None
        record = adapter.get_weight_record(identity_spec.model_id)
        assert record['final_error'] == error
        assert record['trained_count'] == 1
        assert 'final_error' not in adapter.get_all_specs()[0]

        output = registry.run("identity", [0.0, 1.0])
        assert len(output) == 2
        assert output[1] > output[0]

    def test_train_unknown_raises(self, registry):
        with pytest.raises(NotFound):
            registry.train("missing")

    def test_train_without_examples_raises(self, registry, identity_spec):
        registry.add(identity_spec)

        with pytest.raises(EmptyDataset) as exc_info:
            registry.train("identity")
        assert exc_info.value.model == "identity"
        assert registry.get("identity").weights is None

    def test_retrain_replaces_weights(self, trained_registry):
        first = trained_registry.get("identity").weights
        trained_registry.add_example("identity", [1.0, 1.0], [1.0, 1.0])

        trained_registry.train("identity")

        model = trained_registry.get("identity")
        assert model.weights is not first
        assert model.trained_count == 2

    def test_train_is_reproducible(self, trained_registry):
        """Test that retraining from scratch with the same data gives the same weights."""
        first = trained_registry.get("identity").weights
        trained_registry.train("identity")
        assert trained_registry.get("identity").weights.allclose(first, atol=0)

    def test_cancelled_training_keeps_prior_weights(self, trained_registry):
        before = trained_registry.get("identity").weights
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            trained_registry.train("identity", cancel=token)

        model = trained_registry.get("identity")
        assert model.weights is before
        assert model.trained_count == 1

    def test_cancel_mid_training_discards_partial_weights(self, registry, adapter, identity_spec):
        registry.add(ModelSpec(name="slow", layers=[2, 3, 2], error_target=1e-12, max_epochs=10000))
        _add_identity_examples(registry, "slow")
        token = CancellationToken()

        def cancel_at_five(progress):
            if progress['epoch'] == 5:
                token.cancel()

        with pytest.raises(Cancelled):
            registry.train("slow", cancel=token, callback=cancel_at_five)

        model = registry.get("slow")
        assert model.weights is None
        assert model.state == ModelState.LOADED
        assert adapter.get_weights(model.model_id) is None

    def test_timeout_cancels_training(self, registry):
        registry.add(ModelSpec(name="slow", layers=[2, 3, 2], error_target=1e-12, max_epochs=10 ** 7))
        _add_identity_examples(registry, "slow")

        with pytest.raises(Cancelled) as exc_info:
            registry.train("slow", timeout=0.2)
        assert exc_info.value.details['reason'] == 'timeout'
        assert registry.get("slow").weights is None

    def test_persistence_failure_keeps_prior_state(self, tmp_path, fast_config, identity_spec):
        """Test that a failed weight write leaves the previous weights authoritative."""
        class FlakyAdapter(SQLiteAdapter):
            fail_weights = False
            spec_writes = 0

            def put_spec(self, spec, timeout=None):
                self.spec_writes += 1
                super().put_spec(spec, timeout)

            def put_weights(self, model_id, blob, final_error=None, trained_count=None, timeout=None):
                if self.fail_weights:
                    raise PersistenceFailure("disk full", operation='put_weights', model_id=model_id)
                super().put_weights(model_id, blob, final_error, trained_count, timeout)

        adapter = FlakyAdapter(str(tmp_path / "db.sqlite"))
        registry = ModelRegistry(adapter, fast_config)
        registry.add(identity_spec)
        _add_identity_examples(registry)
        first_error = registry.train("identity")
        before = registry.get("identity").weights
        stored_blob = adapter.get_weights(identity_spec.model_id)

        registry.add_example("identity", [1.0, 1.0], [1.0, 1.0])
        adapter.fail_weights = True
        adapter.spec_writes = 0
        with pytest.raises(PersistenceFailure):
            registry.train("identity")

        model = registry.get("identity")
        assert model.weights is before
        assert model.final_error == first_error
        assert model.trained_count == 1
        assert adapter.get_weights(identity_spec.model_id) == stored_blob
        # Nothing but the failed weight write touched storage
        assert adapter.spec_writes == 0
        record = adapter.get_weight_record(identity_spec.model_id)
        assert record['final_error'] == first_error
        assert record['trained_count'] == 1

        reloaded = ModelRegistry.load(adapter, fast_config)
        assert reloaded.get("identity").final_error == first_error
        assert reloaded.get("identity").trained_count == 1
        assert reloaded.get("identity").weights.allclose(before)

    def test_keep_best_retains_better_weights(self, adapter, identity_spec):
        config = RegistryConfig(training=TrainingOptions(learning_rate=3.0), keep_best=True)
        registry = ModelRegistry(adapter, config)
        registry.add(identity_spec)
        _add_identity_examples(registry)
        best_error = registry.train("identity")
        best = registry.get("identity").weights

        # A contradicting example keeps the error far above the converged run
        registry.add_example("identity", [0.0, 1.0], [1.0, 0.0])

        assert registry.train("identity") == best_error
        assert registry.get("identity").weights is best

    def test_warm_start_continues_from_current_weights(self, adapter):
        config = RegistryConfig(training=TrainingOptions(learning_rate=3.0), warm_start=True)
        registry = ModelRegistry(adapter, config)
        registry.add(ModelSpec(name="identity", layers=[2, 3, 2], error_target=1e-12, max_epochs=50))
        _add_identity_examples(registry)

        first = registry.train("identity")
        second = registry.train("identity")

        assert second < first


@pytest.mark.integration
class TestLoad:
    """Test rebuilding a registry from storage."""

    def test_round_trip_through_storage(self, trained_registry, adapter, fast_config):
        """Test that reloaded weights give the same outputs."""
        x = [0.25, 0.75]
        expected = trained_registry.run("identity", x)

        reloaded = ModelRegistry.load(adapter, fast_config)

        model = reloaded.get("identity")
        assert model.state == ModelState.TRAINED
        assert model.final_error == trained_registry.get("identity").final_error
        assert model.trained_count == 1
        assert np.allclose(reloaded.run("identity", x), expected, atol=1e-6)
        assert len(reloaded.examples("identity")) == len(IDENTITY_EXAMPLES)

    def test_untrained_model_reloads_without_weights(self, registry, adapter, identity_spec):
        registry.add(identity_spec)

        reloaded = ModelRegistry.load(adapter)

        assert reloaded.get("identity").state == ModelState.LOADED
        with pytest.raises(Untrained):
            reloaded.run("identity", [0, 1])

    def test_corrupt_record_is_skipped(self, registry, adapter, db_path, identity_spec, caplog):
        registry.add(identity_spec)
        conn = sqlite3.connect(db_path)
        conn.execute(
            "INSERT INTO models (model_id, name, spec) VALUES (?, ?, ?)",
            ("bad-json", "broken", "{not json")
        )
        conn.execute(
            "INSERT INTO models (model_id, name, spec) VALUES (?, ?, ?)",
            ("bad-layers", "shallow", '{"model_id": "bad-layers", "name": "shallow", "layers": [2, 1]}')
        )
        conn.commit()
        conn.close()

        with caplog.at_level("WARNING", logger="fannstore.registry"):
            reloaded = ModelRegistry.load(adapter)

        assert "identity" in reloaded
        assert "broken" not in reloaded
        assert "shallow" not in reloaded
        assert len(reloaded) == 1
        assert "bad-json" in caplog.text
        assert "bad-layers" in caplog.text

    def test_corrupt_weights_leave_model_untrained(self, trained_registry, adapter, identity_spec, caplog):
        blob = bytearray(adapter.get_weights(identity_spec.model_id))
        blob[-10] ^= 0xFF
        adapter.put_weights(identity_spec.model_id, bytes(blob))

        with caplog.at_level("WARNING", logger="fannstore.registry"):
            reloaded = ModelRegistry.load(adapter)

        assert reloaded.get("identity").state == ModelState.LOADED
        assert reloaded.get("identity").weights is None
        assert "corrupt weights" in caplog.text

    def test_mismatched_weights_ignored(self, registry, adapter, identity_spec):
        registry.add(identity_spec)
        adapter.put_weights(identity_spec.model_id, encode_weights(initialize([2, 5, 2])))

        reloaded = ModelRegistry.load(adapter)
        assert reloaded.get("identity").weights is None

    def test_unreadable_training_count_does_not_abort_load(self, trained_registry, adapter, caplog):
        bad = ModelSpec(name="bad", layers=[2, 3, 1])
        adapter.put_spec({**bad.to_dict(), 'trained_count': "x"})

        with caplog.at_level("WARNING", logger="fannstore.registry"):
            reloaded = ModelRegistry.load(adapter)

        assert reloaded.get("identity").state == ModelState.TRAINED
        assert reloaded.get("bad").trained_count == 0
        assert "training count of 'bad'" in caplog.text

    def test_text_weight_column_leaves_model_untrained(self, trained_registry, adapter, db_path):
        bad = ModelSpec(name="bad", layers=[2, 3, 2])
        trained_registry.add(bad)
        adapter.put_weights(bad.model_id, encode_weights(initialize([2, 3, 2])))
        conn = sqlite3.connect(db_path)
        conn.execute(
            "UPDATE weights SET weight_data = 'not a blob' WHERE model_id = ?",
            (bad.model_id,)
        )
        conn.commit()
        conn.close()

        reloaded = ModelRegistry.load(adapter)

        assert reloaded.get("identity").state == ModelState.TRAINED
        assert reloaded.get("bad").state == ModelState.LOADED
        assert reloaded.get("bad").weights is None

    def test_unreadable_run_results_keep_weights(self, trained_registry, adapter, db_path, identity_spec):
        conn = sqlite3.connect(db_path)
        conn.execute(
            "UPDATE weights SET final_error = 'abc', trained_count = 'x' WHERE model_id = ?",
            (identity_spec.model_id,)
        )
        conn.commit()
        conn.close()

        reloaded = ModelRegistry.load(adapter)

        model = reloaded.get("identity")
        assert model.state == ModelState.TRAINED
        assert model.final_error is None
        assert model.trained_count == 0


@pytest.mark.integration
class TestRemoveAndRespecify:
    """Test administrative operations."""

    def test_remove_deletes_everything(self, trained_registry, adapter, identity_spec):
        model = trained_registry.get("identity")

        trained_registry.remove("identity")

        assert "identity" not in trained_registry
        assert model.state == ModelState.DELETED
        assert adapter.get_all_specs() == []
        assert adapter.get_weights(identity_spec.model_id) is None
        assert adapter.count_examples(identity_spec.model_id) == 0
        with pytest.raises(NotFound):
            trained_registry.run("identity", [0, 1])

    def test_remove_unknown_raises(self, registry):
        with pytest.raises(NotFound):
            registry.remove("missing")

    def test_removed_name_leaves_no_lock_behind(self, trained_registry):
        trained_registry.remove("identity")

        with pytest.raises(NotFound):
            trained_registry.is_busy("identity")
        with pytest.raises(NotFound):
            trained_registry.train("identity")
        with pytest.raises(NotFound):
            trained_registry.respecify("identity", max_epochs=10)

        assert "identity" not in trained_registry._model_locks

    def test_name_reusable_after_remove(self, trained_registry):
        trained_registry.remove("identity")
        model = trained_registry.add(ModelSpec(name="identity", layers=[2, 3, 2]))

        assert model.weights is None
        assert len(trained_registry.examples("identity")) == 0

    def test_respecify_discards_weights(self, trained_registry, adapter, identity_spec):
        model = trained_registry.respecify("identity", layers=[2, 6, 2], max_epochs=500)

        assert model.spec.layers == (2, 6, 2)
        assert model.spec.model_id == identity_spec.model_id
        assert model.weights is None
        assert model.state == ModelState.LOADED
        assert adapter.get_weights(identity_spec.model_id) is None
        assert adapter.get_all_specs()[0]['layers'] == [2, 6, 2]
        with pytest.raises(Untrained):
            trained_registry.run("identity", [0, 1])

        trained_registry.train("identity")
        assert trained_registry.get("identity").weights.sizes == (2, 6, 2)

    def test_respecify_invalid(self, trained_registry):
        with pytest.raises(InvalidSpec):
            trained_registry.respecify("identity", layers=[2, 2])
        assert trained_registry.get("identity").weights is not None


@pytest.mark.integration
class TestConcurrency:
    """Test per-model mutual exclusion of training runs."""

    @pytest.fixture
    def slow_registry(self, registry):
        registry.add(ModelSpec(name="m", layers=[2, 3, 2], error_target=1e-12, max_epochs=20))
        _add_identity_examples(registry, "m")
        registry.add(ModelSpec(name="other", layers=[2, 3, 2], error_target=0.01, max_epochs=20000))
        _add_identity_examples(registry, "other")
        return registry

    def test_second_non_blocking_train_is_busy(self, slow_registry):
        started = threading.Event()
        release = threading.Event()
        errors = []

        def hold(progress):
            started.set()
            release.wait(5)

        def first_run():
            try:
                slow_registry.train("m", callback=hold)
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=first_run)
        worker.start()
        try:
            assert started.wait(5)
            assert slow_registry.is_busy("m")

            with pytest.raises(ModelBusy) as exc_info:
                slow_registry.train("m", blocking=False)
            assert exc_info.value.model == "m"

            # Unrelated models are not blocked
            assert not slow_registry.is_busy("other")
            slow_registry.train("other")
            assert len(slow_registry.run("other", [0, 1])) == 2
        finally:
            release.set()
            worker.join(10)

        assert errors == []
        assert slow_registry.get("m").trained_count == 1

    def test_concurrent_blocking_trains_serialize(self, slow_registry):
        """Test that two runs on the same model never interleave epochs."""
        events = []
        events_lock = threading.Lock()

        def record(progress):
            with events_lock:
                events.append(threading.get_ident())

        threads = [
            threading.Thread(target=slow_registry.train, args=("m",), kwargs={'callback': record})
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert len(events) == 40
        switches = sum(1 for a, b in zip(events, events[1:]) if a != b)
        assert switches == 1
        assert slow_registry.get("m").trained_count == 2

    def test_waiting_train_times_out(self, slow_registry):
        started = threading.Event()
        release = threading.Event()

        def hold(progress):
            started.set()
            release.wait(5)

        worker = threading.Thread(target=slow_registry.train, args=("m",), kwargs={'callback': hold})
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises((Cancelled, ModelBusy)):
                slow_registry.train("m", timeout=0.1)
            assert slow_registry.get("m").trained_count == 0
        finally:
            release.set()
            worker.join(10)
