"""
Unit tests for the embeddings module.

Tests the EmbeddingModel wrapper (with sentence-transformers mocked out)
and the EmbeddingPipeline's timeout, retry and validation behaviour.
"""

import threading
from unittest.mock import MagicMock, patch
import numpy as np
import pytest

from blockoli.embeddings import EmbeddingModel, EmbeddingPipeline
from blockoli.errors import EmbeddingFailure


@pytest.fixture
def fake_transformer():
    with patch("blockoli.embeddings.SentenceTransformer") as transformer_cls:
        instance = MagicMock()
        instance.encode.return_value = np.array([0.6, 0.8], dtype=np.float32)
        instance.get_sentence_embedding_dimension.return_value = 2
        transformer_cls.return_value = instance
        yield transformer_cls


def _pipeline(embed_fn, **kwargs):
    kwargs.setdefault("retry_wait", 0)
    kwargs.setdefault("retry_max_wait", 0)
    return EmbeddingPipeline(embed_fn, **kwargs)


# ===== EmbeddingModel =====

def test_embedding_model_lazy_loading(fake_transformer):
    model = EmbeddingModel()
    assert model._model is None
    fake_transformer.assert_not_called()

    _ = model.model
    assert model._model is not None
    fake_transformer.assert_called_once_with("all-MiniLM-L6-v2", device=None)


def test_embed_text(fake_transformer):
    model = EmbeddingModel(normalize=True)

    embedding = model.embed_text("def foo(): pass")

    assert embedding == pytest.approx([0.6, 0.8])
    assert all(isinstance(x, float) for x in embedding)
    _, kwargs = fake_transformer.return_value.encode.call_args
    assert kwargs["normalize_embeddings"] is True


def test_model_is_callable(fake_transformer):
    model = EmbeddingModel()

    assert model("text") == model.embed_text("text")


def test_dimension(fake_transformer):
    assert EmbeddingModel().dimension == 2


def test_model_loaded_once_across_threads(fake_transformer):
    model = EmbeddingModel()
    threads = [threading.Thread(target=lambda: model.model) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert fake_transformer.call_count == 1


# ===== EmbeddingPipeline =====

def test_pipeline_embeds_and_learns_dimension():
    pipeline = _pipeline(lambda text: [1.0, 2.0, 3.0])

    assert pipeline.embed("hello") == [1.0, 2.0, 3.0]
    assert pipeline.dimension == 3
    pipeline.close()


def test_empty_text_is_permanent_without_call():
    embed_fn = MagicMock(return_value=[1.0])
    pipeline = _pipeline(embed_fn)

    with pytest.raises(EmbeddingFailure) as exc_info:
        pipeline.embed("   ")

    assert exc_info.value.transient is False
    embed_fn.assert_not_called()
    pipeline.close()


def test_text_over_max_chars_is_permanent_without_call():
    embed_fn = MagicMock(return_value=[1.0])
    pipeline = _pipeline(embed_fn, max_chars=10)

    with pytest.raises(EmbeddingFailure, match="too long"):
        pipeline.embed("x" * 11)

    embed_fn.assert_not_called()
    pipeline.close()


def test_transient_error_retried_then_succeeds():
    embed_fn = MagicMock(side_effect=[ConnectionError("reset"), [0.5, 0.5]])
    pipeline = _pipeline(embed_fn, max_attempts=3)

    assert pipeline.embed("text") == [0.5, 0.5]
    assert embed_fn.call_count == 2
    pipeline.close()


def test_transient_error_exhausts_attempts():
    embed_fn = MagicMock(side_effect=ConnectionError("down"))
    pipeline = _pipeline(embed_fn, max_attempts=3)

    with pytest.raises(EmbeddingFailure) as exc_info:
        pipeline.embed("text")

    assert exc_info.value.transient is True
    assert exc_info.value.attempts == 3
    assert embed_fn.call_count == 3
    pipeline.close()


def test_permanent_error_not_retried():
    embed_fn = MagicMock(side_effect=ValueError("bad input"))
    pipeline = _pipeline(embed_fn, max_attempts=3)

    with pytest.raises(EmbeddingFailure) as exc_info:
        pipeline.embed("text")

    assert exc_info.value.transient is False
    assert embed_fn.call_count == 1
    assert isinstance(exc_info.value.__cause__, ValueError)
    pipeline.close()


def test_timeout_is_transient():
    release = threading.Event()

    def slow(text):
        release.wait(5)
        return [1.0]

    pipeline = _pipeline(slow, max_attempts=2, timeout=0.05, max_workers=2)
    try:
        with pytest.raises(EmbeddingFailure) as exc_info:
            pipeline.embed("text")
        assert exc_info.value.transient is True
        assert exc_info.value.attempts == 2
    finally:
        release.set()
        pipeline.close()


def test_wrong_dimension_is_permanent():
    pipeline = _pipeline(lambda text: [1.0, 2.0], dimension=3)

    with pytest.raises(EmbeddingFailure, match="dimension 2, expected 3"):
        pipeline.embed("text")
    pipeline.close()


def test_non_finite_output_is_permanent():
    pipeline = _pipeline(lambda text: [1.0, float("nan")])

    with pytest.raises(EmbeddingFailure, match="non-finite"):
        pipeline.embed("text")
    pipeline.close()


def test_embed_block_returns_copy(make_block):
    pipeline = _pipeline(lambda text: [1.0, 0.0])
    block = make_block("foo")

    embedded = pipeline.embed_block(block)

    assert embedded.embedding == [1.0, 0.0]
    assert block.embedding is None
    assert embedded.name == "foo"
    pipeline.close()


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        EmbeddingPipeline(lambda text: [1.0], max_attempts=0)
