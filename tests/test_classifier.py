"""
Tests for the model cache lifecycle and digit classification
"""

import importlib.util
import os
import sys
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from digit_reader.classifier import (
    DigitClassifier,
    DigitPrediction,
    LocalModelStore,
    MemoryModelStore,
    ModelState,
    normalize_patch,
    predict_digit,
)
from digit_reader.errors import InferenceFailed, ModelUnavailable

from fakes import FAKE_BLOB, FakeModel, FakeTrainer, make_cache, white_canvas

HAS_TF = importlib.util.find_spec("tensorflow") is not None


class StaticModel:
    def __init__(self, output):
        self.output = output

    def predict(self, batch, verbose=0):
        return np.asarray(self.output)


class ExplodingModel:
    def predict(self, batch, verbose=0):
        raise RuntimeError("out of memory")


class Interrupted(BaseException):
    """Stands in for KeyboardInterrupt without stopping the test run"""


class BrokenSaveStore(MemoryModelStore):
    def save(self, key, data):
        raise OSError("read-only file system")


def glyph_patch():
    patch = white_canvas(40, 40)
    patch[10:30, 16:24, :3] = 0
    return patch


class TestNormalization(unittest.TestCase):
    """Test patch normalisation to the network input"""

    def test_shape_and_range(self):
        result = normalize_patch(glyph_patch())
        self.assertEqual(result.shape, (28, 28, 1))
        self.assertEqual(result.dtype, np.float32)
        self.assertGreaterEqual(result.min(), 0.0)
        self.assertLessEqual(result.max(), 1.0)

    def test_light_background_is_inverted(self):
        result = normalize_patch(glyph_patch())
        self.assertAlmostEqual(float(result[14, 14, 0]), 1.0, places=3)
        self.assertAlmostEqual(float(result[0, 0, 0]), 0.0, places=3)
        self.assertLess(result.mean(), 0.5)

    def test_dark_background_kept(self):
        patch = np.zeros((56, 56), dtype=np.uint8)
        patch[20:36, 20:36] = 255
        result = normalize_patch(patch)
        self.assertAlmostEqual(float(result[0, 0, 0]), 0.0, places=3)
        self.assertAlmostEqual(float(result[14, 14, 0]), 1.0, places=3)


class TestPrediction(unittest.TestCase):
    """Test a single forward pass and its output checks"""

    def test_prediction_bounds(self):
        prediction = predict_digit(FakeModel(digit=3, peak=0.91), glyph_patch())
        self.assertEqual(prediction.digit, 3)
        self.assertAlmostEqual(prediction.confidence, 91.0, places=3)
        self.assertEqual(len(prediction.probabilities), 10)
        self.assertAlmostEqual(sum(prediction.probabilities), 1.0, places=6)
        self.assertTrue(0.0 <= prediction.confidence <= 100.0)

    def test_output_is_renormalised(self):
        output = np.zeros((1, 10))
        output[0, 4] = 3.0
        output[0, 9] = 1.0
        prediction = predict_digit(StaticModel(output), glyph_patch())
        self.assertEqual(prediction.digit, 4)
        self.assertAlmostEqual(prediction.confidence, 75.0)

    def test_tie_resolves_to_lowest_digit(self):
        output = np.full((1, 10), 0.1)
        prediction = predict_digit(StaticModel(output), glyph_patch())
        self.assertEqual(prediction.digit, 0)

    def test_malformed_outputs_rejected(self):
        bad_outputs = (
            np.full((1, 5), 0.2),
            np.array([[np.nan] + [0.1] * 9]),
            np.zeros((1, 10)),
        )
        for output in bad_outputs:
            with self.assertRaises(InferenceFailed):
                predict_digit(StaticModel(output), glyph_patch())

    def test_forward_pass_failure(self):
        with self.assertRaises(InferenceFailed):
            predict_digit(ExplodingModel(), glyph_patch())

    def test_unrecognised_character(self):
        self.assertEqual(DigitPrediction(7, 90.0, (0.1,) * 10).character, "7")
        self.assertEqual(DigitPrediction(-1, 0.0, (0.1,) * 10).character, "?")


class TestModelCache(unittest.TestCase):
    """Test load-or-train, single-flight initialisation and disposal"""

    def test_starts_absent(self):
        cache = make_cache()
        self.assertEqual(cache.state, ModelState.ABSENT)
        self.assertIsNone(cache.handle)
        self.assertFalse(cache.is_ready)

    def test_trains_and_persists_when_store_empty(self):
        trainer = FakeTrainer()
        store = MemoryModelStore()
        cache = make_cache(trainer=trainer, store=store)
        handle = cache.ensure_model_ready()
        self.assertEqual(handle.source, "trained")
        self.assertEqual(trainer.calls, 1)
        self.assertEqual(store.load("test-model"), FAKE_BLOB)
        self.assertEqual(cache.state, ModelState.READY)

    def test_repeat_calls_return_same_handle(self):
        cache = make_cache()
        self.assertIs(cache.ensure_model_ready(), cache.ensure_model_ready())

    def test_loads_stored_model_without_training(self):
        trainer = FakeTrainer()
        store = MemoryModelStore()
        store.save("test-model", FAKE_BLOB)
        handle = make_cache(trainer=trainer, store=store).ensure_model_ready()
        self.assertEqual(handle.source, "store")
        self.assertEqual(trainer.calls, 0)

    def test_corrupt_stored_model_is_retrained(self):
        trainer = FakeTrainer()
        store = MemoryModelStore()
        store.save("test-model", b"garbage")
        handle = make_cache(trainer=trainer, store=store).ensure_model_ready()
        self.assertEqual(handle.source, "trained")
        self.assertEqual(trainer.calls, 1)
        self.assertEqual(store.load("test-model"), FAKE_BLOB)

    def test_concurrent_callers_share_one_training_run(self):
        trainer = FakeTrainer(delay=0.2)
        cache = make_cache(trainer=trainer)
        with ThreadPoolExecutor(max_workers=5) as pool:
            handles = list(pool.map(lambda _: cache.ensure_model_ready(), range(5)))
        self.assertEqual(trainer.calls, 1)
        for handle in handles:
            self.assertIs(handle, handles[0])

    def test_training_failure_leaves_cache_absent(self):
        trainer = FakeTrainer(error=RuntimeError("dataset unreachable"))
        cache = make_cache(trainer=trainer)
        with self.assertRaises(ModelUnavailable) as ctx:
            cache.ensure_model_ready()
        self.assertIn("dataset unreachable", str(ctx.exception))
        self.assertEqual(cache.state, ModelState.ABSENT)
        self.assertIsNone(cache.handle)

        trainer.error = None
        handle = cache.ensure_model_ready()
        self.assertEqual(handle.source, "trained")
        self.assertEqual(trainer.calls, 2)

    def test_concurrent_waiters_see_the_failure(self):
        trainer = FakeTrainer(delay=0.2, error=RuntimeError("boom"))
        cache = make_cache(trainer=trainer)

        def attempt(_):
            try:
                cache.ensure_model_ready()
            except ModelUnavailable:
                return "failed"
            return "ready"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(attempt, range(4)))
        self.assertEqual(outcomes, ["failed"] * 4)
        self.assertEqual(trainer.calls, 1)

    def test_unsaved_model_is_still_usable(self):
        cache = make_cache(store=BrokenSaveStore())
        handle = cache.ensure_model_ready()
        self.assertEqual(handle.source, "trained")
        self.assertTrue(cache.is_ready)

    def test_dispose_then_reload_from_store(self):
        trainer = FakeTrainer()
        cache = make_cache(trainer=trainer)
        cache.ensure_model_ready()
        cache.dispose()
        self.assertEqual(cache.state, ModelState.ABSENT)
        self.assertIsNone(cache.handle)

        handle = cache.ensure_model_ready()
        self.assertEqual(handle.source, "store")
        self.assertEqual(trainer.calls, 1)

    def test_interrupted_training_releases_the_cache(self):
        trainer = FakeTrainer(error=Interrupted())
        cache = make_cache(trainer=trainer)
        with self.assertRaises(Interrupted):
            cache.ensure_model_ready()
        self.assertEqual(cache.state, ModelState.ABSENT)

        trainer.error = None
        with ThreadPoolExecutor(max_workers=1) as pool:
            handle = pool.submit(cache.ensure_model_ready).result(timeout=5)
        self.assertEqual(handle.source, "trained")
        self.assertEqual(trainer.calls, 2)

    def test_waiters_released_when_training_interrupted(self):
        trainer = FakeTrainer(delay=0.2, error=Interrupted())
        cache = make_cache(trainer=trainer)

        def attempt(_):
            try:
                cache.ensure_model_ready()
            except ModelUnavailable:
                return "unavailable"
            except Interrupted:
                return "interrupted"
            return "ready"

        with ThreadPoolExecutor(max_workers=3) as pool:
            outcomes = sorted(pool.map(attempt, range(3), timeout=5))
        self.assertEqual(outcomes, ["interrupted", "unavailable", "unavailable"])
        self.assertEqual(trainer.calls, 1)

    def test_dispose_is_idempotent(self):
        cache = make_cache()
        cache.dispose()
        cache.dispose()
        self.assertEqual(cache.state, ModelState.ABSENT)


class TestDigitClassifier(unittest.TestCase):
    """Test classification against the cached model"""

    def test_classify_requires_ready_model(self):
        cache = make_cache()
        classifier = DigitClassifier(cache)
        with self.assertRaises(ModelUnavailable):
            classifier.classify(glyph_patch())

    def test_classify_after_dispose_raises(self):
        cache = make_cache()
        classifier = DigitClassifier(cache)
        cache.ensure_model_ready()
        self.assertEqual(classifier.classify(glyph_patch()).digit, 7)
        cache.dispose()
        with self.assertRaises(ModelUnavailable):
            classifier.classify(glyph_patch())

    def test_classify_does_not_train(self):
        trainer = FakeTrainer()
        classifier = DigitClassifier(make_cache(trainer=trainer))
        with self.assertRaises(ModelUnavailable):
            classifier.classify(glyph_patch())
        self.assertEqual(trainer.calls, 0)


class TestLocalModelStore(unittest.TestCase):
    """Test the file-backed model store"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_load_delete(self):
        store = LocalModelStore(self.root / "models")
        self.assertIsNone(store.load("mnist-model"))
        self.assertTrue(store.save("mnist-model", b"archive"))
        self.assertTrue(store.path_for("mnist-model").exists())
        self.assertEqual(store.path_for("mnist-model").suffix, ".keras")
        self.assertEqual(store.load("mnist-model"), b"archive")
        self.assertEqual(list((self.root / "models").glob("*.part")), [])

        store.delete("mnist-model")
        self.assertIsNone(store.load("mnist-model"))
        store.delete("mnist-model")

    def test_save_failure_returns_false(self):
        blocker = self.root / "blocker"
        blocker.write_bytes(b"")
        store = LocalModelStore(blocker / "models")
        self.assertFalse(store.save("mnist-model", b"archive"))


@unittest.skipUnless(HAS_TF, "TensorFlow not installed")
class TestCNNModel(unittest.TestCase):
    """Test the real network architecture and serialisation"""

    def test_architecture(self):
        from digit_reader.models import build_model
        model = build_model()
        self.assertEqual(model.output_shape, (None, 10))
        output = model.predict(np.zeros((1, 28, 28, 1), dtype=np.float32), verbose=0)
        self.assertAlmostEqual(float(output.sum()), 1.0, places=4)

    def test_bytes_round_trip(self):
        from digit_reader.models import build_model, model_from_bytes, model_to_bytes
        model = build_model()
        restored = model_from_bytes(model_to_bytes(model))
        batch = np.random.default_rng(0).random((1, 28, 28, 1), dtype=np.float32)
        np.testing.assert_allclose(model.predict(batch, verbose=0), restored.predict(batch, verbose=0), rtol=1e-5)


if __name__ == "__main__":
    unittest.main()
