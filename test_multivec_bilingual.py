"""multivec bilingual tests: dictionary induction, linear mapping, queries.

Usage:
    python3 -m pytest test_multivec_bilingual.py -v
"""

import numpy as np
import pytest

from multivec import (
    BilingualModel, Config, DimensionMismatchError, EmptySequenceError,
    MonolingualModel, UninitializedModelError,
)


def _space(vectors, prefix="w"):
    words = [f"{prefix}{i}" for i in range(len(vectors))]
    return MonolingualModel.from_vectors(words, vectors)


@pytest.fixture(scope="module")
def linear_pair():
    """Target space is an exact linear image of the source space."""
    rng = np.random.default_rng(11)
    x = rng.normal(size=(50, 4)).astype(np.float32)
    a = rng.normal(size=(4, 4)).astype(np.float32) * 0.5
    z = x @ a.T
    return _space(x, "s"), _space(z, "t"), a


class TestDictionaryInduction:

    def test_identical_spaces_give_identity(self):
        vecs = np.random.default_rng(0).normal(size=(30, 8))
        bi = BilingualModel(_space(vecs), _space(vecs))
        pairs = bi.dictionary_induction()
        assert len(pairs) == 30
        assert all(s == t for s, t in pairs)

    def test_threads_do_not_change_result(self):
        rng = np.random.default_rng(1)
        src, trg = rng.normal(size=(31, 8)), rng.normal(size=(20, 8))
        single = BilingualModel(_space(src), _space(trg, "t"))
        sharded = BilingualModel(_space(src), _space(trg, "t"), threads=3)
        assert single.dictionary_induction() == sharded.dictionary_induction()

    def test_top_counts(self):
        vecs = np.random.default_rng(2).normal(size=(30, 8))
        bi = BilingualModel(_space(vecs), _space(vecs))
        pairs = bi.dictionary_induction(src_count=5, trg_count=10)
        # from_vectors keeps file order as frequency order
        assert [s for s, _ in pairs] == [f"w{i}" for i in range(5)]
        assert {t for _, t in pairs} <= {f"w{i}" for i in range(10)}

    def test_explicit_lists_drop_unknown(self):
        vecs = np.random.default_rng(3).normal(size=(10, 8))
        bi = BilingualModel(_space(vecs), _space(vecs))
        pairs = bi.dictionary_induction(["w1", "zzz"], ["w1", "w2"])
        assert pairs == [("w1", "w1")]
        assert bi.dictionary_induction(["zzz"], ["w1"]) == []

    def test_dimension_mismatch(self):
        rng = np.random.default_rng(4)
        bi = BilingualModel(_space(rng.normal(size=(5, 4))),
                            _space(rng.normal(size=(5, 6))))
        with pytest.raises(DimensionMismatchError):
            bi.dictionary_induction()


class TestMapping:

    def test_recovers_linear_map(self, linear_pair):
        src, trg, a = linear_pair
        bi = BilingualModel(src, trg, seed=5)
        w = bi.learn_mapping([(f"s{i}", f"t{i}") for i in range(50)])
        assert w.shape == (4, 4)
        z = trg.weights.input
        assert bi.mapping_loss < 0.01 * float(np.mean(np.sum(z * z, axis=1)))
        np.testing.assert_allclose(w, a, atol=0.05)

    def test_mapped_queries(self, linear_pair):
        src, trg, _ = linear_pair
        bi = BilingualModel(src, trg, seed=5)
        bi.learn_mapping([(f"s{i}", f"t{i}") for i in range(50)])
        assert bi.trg_closest("s3", n=1)[0][0] == "t3"
        assert bi.similarity("s3", "t3") > 0.99
        assert bi.distance("s3", "t3") < 0.01
        assert bi.similarity("s3", "zzz") == 0.0
        assert bi.similarity_sentence("s1 s2", "t1 t2") > 0.99
        np.testing.assert_allclose(bi.translate("s3"),
                                   trg.word_vector("t3"), atol=0.05)

    def test_src_closest_unmapped(self, linear_pair):
        src, trg, _ = linear_pair
        bi = BilingualModel(src, trg)
        res = bi.src_closest("t0", n=3)
        assert len(res) == 3
        assert all(w.startswith("s") for w, _ in res)

    def test_unknown_pairs_skipped(self, linear_pair):
        src, trg, _ = linear_pair
        bi = BilingualModel(src, trg)
        with pytest.raises(EmptySequenceError):
            bi.learn_mapping([("zzz", "t1"), ("s1", "qqq")])
        with pytest.raises(EmptySequenceError):
            bi.learn_mapping([])

    def test_induction_then_mapping(self):
        vecs = np.random.default_rng(6).normal(size=(40, 6))
        bi = BilingualModel(_space(vecs), _space(vecs), threads=2)
        bi.learn_mapping(bi.dictionary_induction())
        assert bi.mapping_loss < 0.05
        np.testing.assert_allclose(bi.mapping, np.eye(6), atol=0.05)


class TestConstruction:

    def test_requires_trained_models(self):
        vecs = np.ones((3, 2))
        with pytest.raises(UninitializedModelError):
            BilingualModel(MonolingualModel(Config(dimension=2)),
                           _space(vecs))

    def test_rejects_zero_threads(self):
        vecs = np.eye(3)
        with pytest.raises(ValueError):
            BilingualModel(_space(vecs), _space(vecs), threads=0)


@pytest.fixture(scope="module")
def mapped(linear_pair):
    src, trg, _ = linear_pair
    bi = BilingualModel(src, trg, seed=5)
    bi.learn_mapping([(f"s{i}", f"t{i}") for i in range(50)])
    return bi


class TestSequenceSimilarity:

    def test_ngrams(self, mapped):
        assert mapped.similarity_ngrams("s1 s2 s3", "t1 t2 t3") > 0.99
        # the unknown pair is skipped, not scored as zero
        assert mapped.similarity_ngrams("s1 zzz", "t1 t2") > 0.99

    def test_ngrams_length_mismatch(self, mapped):
        with pytest.raises(DimensionMismatchError):
            mapped.similarity_ngrams("s1 s2", "t1")

    def test_ngrams_all_unknown(self, mapped):
        with pytest.raises(EmptySequenceError):
            mapped.similarity_ngrams("zzz s1", "t1 qqq")

    def test_sentence_syntax(self, mapped):
        s = mapped.similarity_sentence_syntax(
            "s1 s2", "t1 t2", "NOUN DET", "NOUN DET",
            [1.0, 1.0], [1.0, 1.0], alpha=0.5)
        assert s > 0.99

    def test_sentence_syntax_weights_matter(self, mapped):
        # NOUN outweighs DET, so s1 dominates the source bag
        noun_first = mapped.similarity_sentence_syntax(
            "s1 s2", "t1", "NOUN DET", "NOUN", [1.0, 1.0], [1.0])
        det_first = mapped.similarity_sentence_syntax(
            "s1 s2", "t1", "DET NOUN", "NOUN", [1.0, 1.0], [1.0])
        assert noun_first > det_first

    def test_sentence_syntax_unknown_tags(self, mapped):
        s = mapped.similarity_sentence_syntax(
            "s1 s2", "t1 t2", "FOO BAR", "NOUN NOUN",
            [1.0, 1.0], [1.0, 1.0])
        assert s == 0.0


class TestFromVectors:

    def test_rejects_non_positive_counts(self):
        with pytest.raises(ValueError):
            MonolingualModel.from_vectors(["a", "b"], np.eye(2), counts=[0, 0])
        with pytest.raises(ValueError):
            MonolingualModel.from_vectors(["a", "b"], np.eye(2),
                                          counts=[3, -1])

    def test_count_length_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            MonolingualModel.from_vectors(["a", "b"], np.eye(2), counts=[3])
