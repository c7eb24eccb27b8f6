"""multivec training tests: determinism, convergence, consistency policies,
paragraph vectors, queries, save/load and word2vec export.

Usage:
    python3 -m pytest test_multivec_training.py -v
"""

import os
import random
import tempfile

import numpy as np
import pytest

from multivec import (
    Config, DimensionMismatchError, EmptySequenceError,
    ModelFormatError, MonolingualModel, OutOfVocabularyError,
    UninitializedModelError, VectorPolicy, load_vectors,
)

TABLE = 10_000
TOPIC_A = [f"a{i}" for i in range(10)]
TOPIC_B = [f"b{i}" for i in range(10)]


def _config(**kw):
    base = dict(dimension=20, window_size=3, subsampling=0.0,
                learning_rate=0.05, iterations=10, threads=1, min_count=1,
                negative=5, unigram_table_size=TABLE)
    base.update(kw)
    return Config(**base)


def _write(lines):
    f = tempfile.NamedTemporaryFile(
        mode="w", suffix=".txt", delete=False, prefix="mv_")
    for line in lines:
        f.write(line + "\n")
    f.close()
    return f.name


@pytest.fixture(scope="module")
def topic_corpus():
    """400 lines, each drawn from one of two disjoint topic vocabularies."""
    rng = random.Random(7)
    lines = []
    for i in range(400):
        topic = TOPIC_A if i % 2 == 0 else TOPIC_B
        lines.append(" ".join(rng.choice(topic) for _ in range(8)))
    path = _write(lines)
    yield path
    os.unlink(path)


@pytest.fixture(scope="module")
def trained(topic_corpus):
    return MonolingualModel(_config(threads=2)).train(topic_corpus)


def _topic_gap(model):
    """Mean intra-topic minus mean inter-topic similarity."""
    intra, inter = [], []
    for i, w1 in enumerate(TOPIC_A):
        for w2 in TOPIC_A[i + 1:]:
            intra.append(model.similarity(w1, w2))
        for w2 in TOPIC_B:
            inter.append(model.similarity(w1, w2))
    for i, w1 in enumerate(TOPIC_B):
        for w2 in TOPIC_B[i + 1:]:
            intra.append(model.similarity(w1, w2))
    return np.mean(intra) - np.mean(inter)


class TestTraining:

    def test_two_word_corpus(self):
        path = _write(["hello world"] * 3)
        try:
            m = MonolingualModel(_config(dimension=2, negative=1,
                                         iterations=1))
            m.train(path)
            assert len(m.vocab) == 2
            assert np.all(np.isfinite(m.weights.input))
            assert m.training_lines == 3
            assert m.training_words == 6
        finally:
            os.unlink(path)

    def test_iterable_input(self):
        m = MonolingualModel(_config(iterations=2))
        m.train([["the", "cat", "sat"], ["the", "dog", "ran"]])
        assert "cat" in m.vocab
        assert m.word_vector("cat").shape == (20,)

    def test_min_count_prunes(self):
        path = _write(["rare " + " ".join(TOPIC_A)] + [" ".join(TOPIC_A)] * 5)
        try:
            m = MonolingualModel(_config(min_count=2, iterations=1))
            m.train(path)
            assert "rare" not in m.vocab
            assert len(m.vocab) == 10
        finally:
            os.unlink(path)

    def test_more_threads_than_lines(self):
        path = _write(["a b c", "b c a"])
        try:
            m = MonolingualModel(_config(threads=8, iterations=2))
            m.train(path)
            assert m.training_lines == 2
        finally:
            os.unlink(path)

    def test_continue_training_requires_model(self, topic_corpus):
        with pytest.raises(UninitializedModelError):
            MonolingualModel(_config()).train(topic_corpus, initialize=False)

    def test_continue_training_keeps_vocab(self, topic_corpus):
        m = MonolingualModel(_config(iterations=1)).train(topic_corpus)
        before = dict((w, e.index) for w, e in m.vocab.entries.items())
        m.train(topic_corpus, initialize=False)
        assert dict((w, e.index) for w, e in m.vocab.entries.items()) == before

    def test_no_average(self, topic_corpus):
        m = MonolingualModel(_config(no_average=True, iterations=3,
                                     learning_rate=0.01))
        m.train(topic_corpus)
        assert np.all(np.isfinite(m.weights.input))
        assert _topic_gap(m) > 0.0

    def test_subsampling(self, topic_corpus):
        """Frequent-word discarding runs during training; progress still
        counts every in-vocabulary token."""
        plain = MonolingualModel(_config(iterations=2)).train(topic_corpus)
        m = MonolingualModel(_config(iterations=2, subsampling=1e-2))
        m.train(topic_corpus)
        assert np.all(np.isfinite(m.weights.input))
        assert m.words_processed == 2 * m.training_words
        assert not np.array_equal(m.weights.input, plain.weights.input)

    def test_progress_observer(self, topic_corpus):
        seen = []
        m = MonolingualModel(_config(iterations=2),
                             progress=lambda a, p: seen.append((a, p)))
        m.train(topic_corpus)
        assert seen
        assert seen[-1][1] == pytest.approx(1.0)
        alphas = [a for a, _ in seen]
        assert alphas == sorted(alphas, reverse=True)
        assert m.words_processed == 2 * m.training_words


class TestDeterminism:

    def test_same_seed_same_output(self, topic_corpus):
        """Single-threaded training is bit-identical for a fixed seed."""
        models = [MonolingualModel(_config(iterations=2)).train(topic_corpus)
                  for _ in range(2)]
        assert np.array_equal(models[0].weights.input,
                              models[1].weights.input)
        assert np.array_equal(models[0].weights.output,
                              models[1].weights.output)

    def test_different_seed_differs(self, topic_corpus):
        m1 = MonolingualModel(_config(iterations=1)).train(topic_corpus)
        m2 = MonolingualModel(_config(iterations=1, seed=3)).train(
            topic_corpus)
        assert not np.array_equal(m1.weights.input, m2.weights.input)


class TestConvergence:

    def test_hogwild_cbow(self, trained):
        assert _topic_gap(trained) > 0.1

    def test_hogwild_skip_gram(self, topic_corpus):
        m = MonolingualModel(_config(threads=2, skip_gram=True))
        m.train(topic_corpus)
        assert _topic_gap(m) > 0.1

    def test_hierarchical_softmax(self, topic_corpus):
        m = MonolingualModel(_config(threads=2, negative=0,
                                     hierarchical_softmax=True))
        m.train(topic_corpus)
        assert _topic_gap(m) > 0.1
        assert np.any(m.weights.output_hs)

    @pytest.mark.parametrize("skip_gram", [False, True])
    def test_locked_updates(self, topic_corpus, skip_gram):
        m = MonolingualModel(_config(threads=2, sync_sgd=True, iterations=5,
                                     hierarchical_softmax=True,
                                     skip_gram=skip_gram))
        assert m.consistency.name == "locked"
        m.train(topic_corpus)
        assert _topic_gap(m) > 0.1


class TestParagraphVectors:

    def test_pv_dm_sentence_matrix(self, topic_corpus):
        m = MonolingualModel(_config(sent_vector=True, iterations=2))
        m.train(topic_corpus)
        assert m.weights.sentences.shape == (400, 20)

    def test_every_chunk_updates_its_rows(self):
        """11 lines over 3 threads: the last chunk takes 5 lines."""
        lines = [" ".join(TOPIC_A[i % 10:] + TOPIC_A[:i % 10])
                 for i in range(11)]
        path = _write(lines)
        try:
            m = MonolingualModel(_config(dimension=8, sent_vector=True,
                                         threads=3, iterations=2))
            initial = ((np.random.RandomState(1).random_sample((11, 8))
                        - 0.5) / 8).astype(np.float32)
            m.train(path)
            s = m.weights.sentences
            assert s.shape == (11, 8)
            assert np.all(np.any(s != initial, axis=1))
            assert m.words_processed == 2 * 110
        finally:
            os.unlink(path)

    def test_locked_dbow(self, topic_corpus):
        m = MonolingualModel(_config(sent_vector=True, skip_gram=True,
                                     sync_sgd=True, threads=2, iterations=2))
        m.train(topic_corpus)
        assert m.weights.sentences.shape == (400, 20)
        assert np.all(np.isfinite(m.weights.sentences))

    def test_dbow(self, topic_corpus):
        m = MonolingualModel(_config(sent_vector=True, skip_gram=True,
                                     threads=2, iterations=5))
        m.train(topic_corpus)
        s = m.weights.sentences
        assert s.shape == (400, 20)
        a = s[0::2] / np.linalg.norm(s[0::2], axis=1, keepdims=True)
        b = s[1::2] / np.linalg.norm(s[1::2], axis=1, keepdims=True)
        assert float(np.mean(a @ a.T)) > float(np.mean(a @ b.T))

    def test_online_inference_leaves_model_frozen(self, trained):
        before = trained.weights.input.copy()
        v = trained.sentence_vector("a1 a2 a3 a4")
        assert v.shape == (20,)
        assert np.any(v)
        assert np.array_equal(before, trained.weights.input)

    def test_online_inference_empty(self, trained):
        with pytest.raises(EmptySequenceError):
            trained.sentence_vector("zzz qqq")

    def test_online_inference_file(self, trained):
        path = _write(["a1 a2 a3", "zzz qqq", "b1 b2"])
        try:
            rows = trained.sentence_vectors(path)
            assert rows.shape == (3, 20)
            assert not np.any(rows[1])
            assert np.any(rows[0]) and np.any(rows[2])
        finally:
            os.unlink(path)

    def test_save_sentence_vectors(self, topic_corpus):
        m = MonolingualModel(_config(sent_vector=True, iterations=1))
        m.train(topic_corpus)
        path = tempfile.mktemp(suffix=".txt")
        try:
            m.save_sentence_vectors(path)
            rows = np.loadtxt(path, dtype=np.float32)
            np.testing.assert_allclose(rows, m.weights.sentences, rtol=1e-6)
        finally:
            os.unlink(path)

    def test_no_sentence_vectors(self, trained):
        with pytest.raises(UninitializedModelError):
            trained.save_sentence_vectors(tempfile.mktemp())


class TestQueries:

    def test_untrained(self):
        m = MonolingualModel(_config())
        with pytest.raises(UninitializedModelError):
            m.similarity("a", "b")

    def test_oov(self, trained):
        assert trained.similarity("a1", "zzz") == 0.0
        with pytest.raises(OutOfVocabularyError):
            trained.word_vector("zzz")

    def test_self_similarity(self, trained):
        assert trained.similarity("a1", "a1") == 1.0
        assert trained.distance("a1", "a1") == 0.0
        assert 0.0 <= trained.distance("a1", "b1") <= 1.0

    def test_closest(self, trained):
        res = trained.closest("a1", n=5)
        assert len(res) == 5
        assert all(w != "a1" for w, _ in res)
        sims = [s for _, s in res]
        assert sims == sorted(sims, reverse=True)
        assert sum(w in TOPIC_A for w, _ in res) >= 4

    def test_closest_among(self, trained):
        res = trained.closest_among("a1", ["b1", "a2", "zzz"])
        assert [w for w, _ in res] == ["a2", "b1"]

    def test_policies(self, trained):
        v = trained.word_vector("a1", VectorPolicy.CONCAT)
        assert v.shape == (40,)
        assert trained.similarity("a1", "a2", VectorPolicy.SUM) <= 1.0

    def test_similarity_ngrams(self, trained):
        s = trained.similarity_ngrams("a1 b1", "a2 b2")
        assert -1.0 <= s <= 1.0
        with pytest.raises(DimensionMismatchError):
            trained.similarity_ngrams("a1 b1", "a2")
        with pytest.raises(EmptySequenceError):
            trained.similarity_ngrams("zzz", "qqq")

    def test_similarity_sentence(self, trained):
        same = trained.similarity_sentence("a1 a2 a3", "a4 a5 a6")
        cross = trained.similarity_sentence("a1 a2 a3", "b4 b5 b6")
        assert same > cross
        assert trained.similarity_sentence("zzz", "a1") == 0.0

    def test_similarity_sentence_syntax(self, trained):
        s = trained.similarity_sentence_syntax(
            "a1 a2", "a1 a2", "NOUN VERB", "NOUN VERB",
            [1.0, 2.0], [1.0, 2.0], alpha=0.5)
        assert s == pytest.approx(1.0, abs=1e-5)

    def test_soft_wer(self, trained):
        assert trained.soft_wer("a1 a2 a3", "a1 a2 a3") == 0.0
        assert trained.soft_wer("a1 a2", "a1 a2 a3") == pytest.approx(1 / 3)
        near = trained.soft_wer("a1 a2 a4", "a1 a2 a3")
        far = trained.soft_wer("a1 a2 b4", "a1 a2 a3")
        assert near < far

    def test_words_sorted_by_count(self, trained):
        counts = [c for _, c in trained.words()]
        assert counts == sorted(counts, reverse=True)


class TestIO:

    def test_save_load_roundtrip(self, trained):
        model_path = tempfile.mktemp(suffix=".npz")
        try:
            trained.save(model_path)
            loaded = MonolingualModel.load(model_path)
            assert loaded.config == trained.config
            assert np.array_equal(loaded.weights.input, trained.weights.input)
            assert np.array_equal(loaded.weights.output_hs,
                                  trained.weights.output_hs)
            for w, e in trained.vocab.entries.items():
                le = loaded.vocab[w]
                assert (le.index, le.count, le.code, le.parents) == \
                    (e.index, e.count, e.code, e.parents)
            assert loaded.closest("a1", n=3) == trained.closest("a1", n=3)
            assert loaded.training_words == trained.training_words
        finally:
            os.unlink(model_path)

    def test_save_appends_suffix(self, trained):
        base = tempfile.mktemp(suffix=".bin")
        try:
            written = trained.save(base)
            assert written == base + ".npz"
            assert os.path.isfile(written)
            loaded = MonolingualModel.load(base)
            assert np.array_equal(loaded.weights.input,
                                  trained.weights.input)
        finally:
            os.unlink(base + ".npz")

    def test_load_overrides(self, trained):
        model_path = tempfile.mktemp(suffix=".npz")
        try:
            trained.save(model_path)
            loaded = MonolingualModel.load(model_path, threads=3)
            assert loaded.config.threads == 3
        finally:
            os.unlink(model_path)

    def test_loaded_model_trains_further(self, trained, topic_corpus):
        model_path = tempfile.mktemp(suffix=".npz")
        try:
            trained.save(model_path)
            loaded = MonolingualModel.load(model_path, iterations=1)
            loaded.train(topic_corpus, initialize=False)
            assert not np.array_equal(loaded.weights.input,
                                      trained.weights.input)
        finally:
            os.unlink(model_path)

    @pytest.mark.parametrize("binary", [False, True])
    def test_export_roundtrip(self, trained, binary):
        path = tempfile.mktemp(suffix=".bin" if binary else ".txt")
        try:
            trained.save_vectors(path, binary=binary)
            words, mat = load_vectors(path, binary=binary)
            assert len(words) == len(trained.vocab)
            assert words[0] == trained.words()[0][0]
            for w, row in zip(words, mat):
                np.testing.assert_allclose(row, trained.word_vector(w),
                                           rtol=1e-6, atol=1e-7)
        finally:
            os.unlink(path)

    def test_from_vectors(self, trained):
        words = [w for w, _ in trained.words()]
        mat = np.vstack([trained.word_vector(w) for w in words])
        m = MonolingualModel.from_vectors(words, mat)
        assert m.similarity("a1", "a2") == pytest.approx(
            trained.similarity("a1", "a2"), rel=1e-5)
        with pytest.raises(DimensionMismatchError):
            MonolingualModel.from_vectors(words[:3], mat)

    def test_load_rejects_foreign_archive(self):
        path = tempfile.mktemp(suffix=".npz")
        try:
            np.savez_compressed(path, emb=np.zeros((2, 2)))
            with pytest.raises(ModelFormatError):
                MonolingualModel.load(path)
        finally:
            os.unlink(path)

    def test_load_missing_file(self):
        with pytest.raises(FileNotFoundError):
            MonolingualModel.load("/nonexistent/model.npz")
