"""multivec: word2vec-style word and sentence embeddings in pure Python.

Implements monolingual training with:
- CBOW, skip-gram and paragraph vectors (PV-DM through CBOW, DBOW)
- Hierarchical softmax over a Huffman tree and/or negative sampling
- Frequent-word subsampling and linear learning-rate decay
- Multithreaded SGD over line-aligned corpus chunks, either lock-free
  ("Hogwild") or with one mutex per weight matrix
- Bilingual alignment: dictionary induction + a learned linear mapping

::

    model = MonolingualModel(Config(dimension=100, threads=4))
    model.train("corpus.txt")
    model.similarity("king", "queen")          # → 0.71
    model.closest("king", n=5)                 # → [("queen", 0.71), ...]
    model.save_vectors("vectors.bin", binary=True)

    # From any iterable of token lists (spills to temp file):
    model.train([["the", "cat", "sat"], ["the", "dog", "ran"]])

    # Bilingual mapping between two trained spaces:
    bi = BilingualModel(model_fr, model_en, threads=4)
    bi.learn_mapping(bi.dictionary_induction(src_count=5000, trg_count=5000))
    bi.trg_closest("chat", n=5)

Requires only **numpy** and **numba**.

Vector policies (``VectorPolicy``)::

    0  INPUT   input weights only (default)
    1  CONCAT  input ‖ output weights      (negative sampling only)
    2  SUM     input + output weights      (negative sampling only)
    3  OUTPUT  output weights only         (negative sampling only)
"""

from __future__ import annotations

import argparse
import enum
import heapq
import os
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field, fields
from typing import Callable, Iterable, Iterator

import numpy as np
from numba import njit


MAX_EXP = 6
UNIGRAM_TABLE_SIZE = 100_000_000
UNIGRAM_POWER = 0.75
PROGRESS_STEP = 10_000
MIN_ALPHA_RATIO = 0.0001
_RAND_MAX = 2147483647


# ── errors ────────────────────────────────────────────────────────────────────


class MultivecError(Exception):
    """Base class for every error raised by this module."""


class EmptyInputError(MultivecError, OSError):
    """Input stream or vocabulary has nothing to work with."""


class EmptyCorpusError(EmptyInputError):
    """Training file has no lines."""


class UninitializedModelError(MultivecError, RuntimeError):
    """Training or querying before vocabulary and weights exist."""


class OutOfVocabularyError(MultivecError, KeyError):
    """Word lookup miss."""

    def __str__(self):
        return f"out of vocabulary: {self.args[0]!r}" if self.args else \
            "out of vocabulary"


class EmptySequenceError(MultivecError, ValueError):
    """Sequence without a single in-vocabulary token."""


class DimensionMismatchError(MultivecError, ValueError):
    """Sequences compared position-wise have different lengths."""


class ModelFormatError(MultivecError, ValueError):
    """Persisted model is corrupt or incomplete."""


# ── public helpers ────────────────────────────────────────────────────────────

def tokenize(line) -> list[str]:
    """Split a line (str or UTF-8 bytes) on ASCII whitespace."""
    if isinstance(line, bytes):
        return [t.decode("utf-8", errors="replace") for t in line.split()]
    return line.split()


def iter_lines(path: str) -> Iterator[list[str]]:
    """Yield tokenized lines from a text file."""
    with open(path, "rb") as f:
        for line in f:
            tokens = tokenize(line)
            if tokens:
                yield tokens


def _check_corpus(path: str):
    """Fail before any parsing when the file is missing or empty."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"no such file: {path}")
    if os.path.getsize(path) == 0:
        raise EmptyCorpusError(f"file is empty: {path}")


def learning_rate(initial: float, processed: int, total: int) -> float:
    """Linearly decayed learning rate, floored at 1e-4 of the initial rate."""
    alpha = initial * (1.0 - processed / max(total, 1))
    return max(alpha, initial * MIN_ALPHA_RATIO)


# ── configuration ────────────────────────────────────────────────────────────


class VectorPolicy(enum.IntEnum):
    """Which weight matrices a word vector is read from."""
    INPUT = 0
    CONCAT = 1
    SUM = 2
    OUTPUT = 3


@dataclass(frozen=True)
class Config:
    dimension: int           = 100
    window_size: int         = 5
    subsampling: float       = 1e-3
    learning_rate: float     = 0.05
    iterations: int          = 5
    threads: int             = 4
    min_count: int           = 5
    hierarchical_softmax: bool = False
    negative: int            = 5
    skip_gram: bool          = False
    sent_vector: bool        = False
    no_average: bool         = False
    sync_sgd: bool           = False
    verbose: int             = 0
    seed: int                = 0
    unigram_table_size: int  = UNIGRAM_TABLE_SIZE

    def __post_init__(self):
        if self.dimension < 1:
            raise ValueError("dimension must be positive")
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if self.iterations < 1:
            raise ValueError("iterations must be at least 1")
        if self.threads < 1:
            raise ValueError("threads must be at least 1")
        if self.negative < 0:
            raise ValueError("negative must be non-negative")
        if self.subsampling < 0:
            raise ValueError("subsampling must be non-negative")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.unigram_table_size < 1:
            raise ValueError("unigram_table_size must be positive")
        if not self.hierarchical_softmax and self.negative == 0:
            raise ValueError(
                "enable hierarchical_softmax or negative sampling")


# ── vocabulary ───────────────────────────────────────────────────────────────


@dataclass(eq=False)
class VocabEntry:
    index: int
    word: str
    count: int        = 1
    is_leaf: bool     = True
    code: tuple       = ()
    parents: tuple    = ()


# out-of-vocabulary / discarded token; equal only to itself
UNK = VocabEntry(index=-1, word="<UNK>", count=0)


@dataclass
class HuffmanTree:
    """Huffman tree stored as an arena of node ids.

    Leaves are ``[0, n_leaves)``; internal node ``i`` has node id
    ``n_leaves + i`` and children ``left[i]`` / ``right[i]``.
    """
    n_leaves: int
    left: list[int]     = field(default_factory=list)
    right: list[int]    = field(default_factory=list)
    root: int           = 0

    @property
    def n_internal(self) -> int:
        return len(self.left)

    @classmethod
    def build(cls, counts) -> HuffmanTree:
        n = len(counts)
        if n == 0:
            raise EmptyInputError("cannot build a Huffman tree without words")
        # (count, insertion order, node id): equal counts pop oldest first
        heap = [(int(c), i, i) for i, c in enumerate(counts)]
        heapq.heapify(heap)
        tree = cls(n_leaves=n)
        order = n
        while len(heap) > 1:
            lc, _, left = heapq.heappop(heap)
            rc, _, right = heapq.heappop(heap)
            node = n + len(tree.left)
            tree.left.append(left)
            tree.right.append(right)
            heapq.heappush(heap, (lc + rc, order, node))
            order += 1
        tree.root = heap[0][2]
        return tree

    def assign_codes(self) -> list[tuple[tuple, tuple]]:
        """Return ``(code, parents)`` for every leaf, in leaf order."""
        n = self.n_leaves
        result: list[tuple[tuple, tuple]] = [((), ())] * n
        stack = [(self.root, (), ())]
        while stack:
            node, code, parents = stack.pop()
            if node < n:
                result[node] = (code, parents)
                continue
            inner = node - n
            parents = parents + (inner,)
            # right pushed first so the left subtree is visited first
            stack.append((self.right[inner], code + (1,), parents))
            stack.append((self.left[inner], code + (0,), parents))
        return result


@dataclass
class Vocab:
    entries: dict[str, VocabEntry] = field(default_factory=dict)
    word_count: int                = 0
    n_internal: int                = 0
    counts: np.ndarray             = field(
        default_factory=lambda: np.zeros(0, np.int64))
    codes: np.ndarray              = field(
        default_factory=lambda: np.zeros((0, 1), np.uint8))
    points: np.ndarray             = field(
        default_factory=lambda: np.zeros((0, 1), np.int32))
    code_lens: np.ndarray          = field(
        default_factory=lambda: np.zeros(0, np.int32))

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, word) -> bool:
        return word in self.entries

    def __getitem__(self, word: str) -> VocabEntry:
        try:
            return self.entries[word]
        except KeyError:
            raise OutOfVocabularyError(word) from None

    def lookup(self, word: str) -> VocabEntry:
        return self.entries.get(word, UNK)

    def add(self, word: str):
        entry = self.entries.get(word)
        if entry is None:
            self.entries[word] = VocabEntry(index=len(self.entries), word=word)
        else:
            entry.count += 1

    def prune(self, min_count: int):
        """Drop rare words and renumber the rest densely, in insertion order."""
        kept = {}
        for word, entry in self.entries.items():
            if entry.count >= min_count:
                entry.index = len(kept)
                kept[word] = entry
        self.entries = kept

    def by_index(self) -> list[VocabEntry]:
        out = [UNK] * len(self.entries)
        for entry in self.entries.values():
            out[entry.index] = entry
        return out

    def sorted_entries(self) -> list[VocabEntry]:
        """Entries by descending count, ties broken lexicographically."""
        return sorted(self.entries.values(), key=lambda e: (-e.count, e.word))

    def build_tree(self) -> HuffmanTree:
        """Assign Huffman codes to every entry and pack them for the kernels."""
        entries = self.by_index()
        tree = HuffmanTree.build([e.count for e in entries])
        for entry, (code, parents) in zip(entries, tree.assign_codes()):
            entry.code, entry.parents = code, parents
        self.n_internal = tree.n_internal
        self._pack(entries)
        return tree

    def _pack(self, entries):
        n = len(entries)
        max_len = max([len(e.code) for e in entries] + [1])
        self.counts = np.array([e.count for e in entries], dtype=np.int64)
        self.word_count = int(self.counts.sum())
        self.codes = np.zeros((n, max_len), np.uint8)
        self.points = np.zeros((n, max_len), np.int32)
        self.code_lens = np.zeros(n, np.int32)
        for i, e in enumerate(entries):
            k = len(e.code)
            self.code_lens[i] = k
            self.codes[i, :k] = e.code
            self.points[i, :k] = e.parents

    def encode(self, tokens: list[str]) -> np.ndarray:
        """Token list → int32 indices, -1 for out-of-vocabulary tokens."""
        get = self.entries.get
        return np.array([(get(t) or UNK).index for t in tokens],
                        dtype=np.int32)


def build_vocabulary(lines: Iterable) -> Vocab:
    """Count whitespace-delimited tokens over lines or token lists."""
    vocab = Vocab()
    for line in lines:
        tokens = line if isinstance(line, list) else tokenize(line)
        for tok in tokens:
            vocab.add(tok)
    if len(vocab) == 0:
        raise EmptyInputError("input contains no tokens")
    return vocab


# ── unigram sampler ──────────────────────────────────────────────────────────


class UnigramTable:
    """Flattened count^0.75 table for O(1) negative draws."""

    __slots__ = ("table", "entries")

    def __init__(self, vocab: Vocab, size: int = UNIGRAM_TABLE_SIZE):
        if len(vocab) == 0:
            raise EmptyInputError("cannot sample from an empty vocabulary")
        self.entries = vocab.by_index()
        weights = np.array([e.count for e in self.entries],
                           dtype=np.float64) ** UNIGRAM_POWER
        if not weights.sum() > 0:
            raise EmptyInputError("unigram table needs positive word counts")
        reps = np.rint(weights / weights.sum() * size).astype(np.int64)
        self.table = np.repeat(
            np.arange(len(self.entries), dtype=np.int32), reps)
        if len(self.table) == 0:
            raise EmptyInputError(f"unigram table of size {size} is empty")

    def __len__(self) -> int:
        return len(self.table)

    def sample(self, rng: np.random.Generator) -> VocabEntry:
        return self.entries[self.table[rng.integers(len(self.table))]]


# ── weight store ─────────────────────────────────────────────────────────────


def _readonly(a: np.ndarray) -> np.ndarray:
    v = a.view()
    v.flags.writeable = False
    return v


class WeightStore:
    """Input, output (negative sampling), output (hierarchical softmax)
    and optional paragraph-vector matrices of one model."""

    __slots__ = ("input", "output", "output_hs", "sentences", "negative")

    def __init__(self, input: np.ndarray, output: np.ndarray,
                 output_hs: np.ndarray, sentences: np.ndarray | None = None,
                 negative: bool = True):
        self.input, self.output, self.output_hs = input, output, output_hs
        self.sentences = sentences
        self.negative = negative

    @classmethod
    def initialize(cls, vocab_size: int, n_internal: int, dim: int, *,
                   rng: np.random.RandomState,
                   negative: bool = True) -> WeightStore:
        inp = ((rng.random_sample((vocab_size, dim)) - 0.5) / dim).astype(
            np.float32)
        return cls(inp,
                   np.zeros((vocab_size, dim), np.float32),
                   np.zeros((n_internal, dim), np.float32),
                   negative=negative)

    @property
    def dim(self) -> int:
        return self.input.shape[1]

    def init_sentences(self, n_lines: int, rng: np.random.RandomState):
        """(Re)allocate paragraph vectors; previous contents are discarded."""
        self.sentences = ((rng.random_sample((n_lines, self.dim)) - 0.5)
                          / self.dim).astype(np.float32)

    def word_vector(self, index: int,
                    policy: VectorPolicy = VectorPolicy.INPUT) -> np.ndarray:
        policy = VectorPolicy(policy)
        if not self.negative or policy == VectorPolicy.INPUT:
            return _readonly(self.input[index])
        if policy == VectorPolicy.CONCAT:
            return _readonly(np.concatenate(
                (self.input[index], self.output[index])))
        if policy == VectorPolicy.SUM:
            return _readonly(self.input[index] + self.output[index])
        return _readonly(self.output[index])

    def matrix(self, policy: VectorPolicy = VectorPolicy.INPUT) -> np.ndarray:
        """All word vectors under *policy*, row i = word index i."""
        policy = VectorPolicy(policy)
        if not self.negative or policy == VectorPolicy.INPUT:
            return _readonly(self.input)
        if policy == VectorPolicy.CONCAT:
            return _readonly(np.hstack((self.input, self.output)))
        if policy == VectorPolicy.SUM:
            return _readonly(self.input + self.output)
        return _readonly(self.output)


# ── chunk scheduler ──────────────────────────────────────────────────────────

@njit(cache=True)
def _scan_corpus(buf, buf_len):
    """Pre-scan mmap for line start byte offsets and the token count."""
    if buf_len == 0:
        return np.empty(0, np.int64), np.int64(0)
    n = np.int64(1)
    for i in range(buf_len):
        if buf[i] == 10 and i + 1 < buf_len:
            n += 1
    offsets = np.empty(n, np.int64)
    offsets[0] = np.int64(0)
    idx = np.int64(1)
    n_words = np.int64(0)
    in_token = False
    for i in range(buf_len):
        b = buf[i]
        if b == 32 or b == 9 or b == 10 or b == 11 or b == 12 or b == 13:
            in_token = False
            if b == 10 and i + 1 < buf_len:
                offsets[idx] = np.int64(i + 1)
                idx += 1
        elif not in_token:
            in_token = True
            n_words += 1
    return offsets, n_words


@dataclass(frozen=True)
class Chunks:
    line_count: int
    word_count: int
    starts: tuple[int, ...]
    lines_per_chunk: int

    def line_ranges(self) -> list[tuple[int, int]]:
        """``[first, end)`` line range of each chunk; the last one absorbs
        the remainder."""
        n = len(self.starts)
        return [(i * self.lines_per_chunk,
                 self.line_count if i == n - 1
                 else (i + 1) * self.lines_per_chunk)
                for i in range(n)]


def chunkify(path: str, n_threads: int) -> Chunks:
    """Split *path* into ``n_threads`` line-aligned chunks of equal line
    count."""
    _check_corpus(path)
    buf = np.memmap(path, dtype=np.uint8, mode="r")
    offsets, n_words = _scan_corpus(buf, np.int64(len(buf)))
    del buf
    n_lines = len(offsets)
    if n_lines == 0:
        raise EmptyCorpusError(f"no lines in {path}")
    per_chunk = n_lines // n_threads
    starts = tuple(int(offsets[i * per_chunk]) for i in range(n_threads))
    return Chunks(line_count=n_lines, word_count=int(n_words),
                  starts=starts, lines_per_chunk=per_chunk)


# ── SGD kernels ──────────────────────────────────────────────────────────────

@njit(cache=True)
def _next_random(rng_state):
    return (rng_state * np.int64(48271)) % np.int64(2147483647)


@njit(cache=True)
def discard_probability(freq, threshold):
    """word2vec subsampling: chance that a word of frequency *freq* is
    dropped. Zero whenever ``freq <= threshold``."""
    if freq <= 0.0 or threshold <= 0.0:
        return 0.0
    p = 1.0 - (1.0 + np.sqrt(freq / threshold)) * threshold / freq
    return max(p, 0.0)


@njit(cache=True)
def _subsample(ids, counts, total_words, threshold, rng_state):
    """Drop UNK (-1) and randomly subsampled tokens, keeping order."""
    out = np.empty(len(ids), np.int32)
    n = 0
    for i in range(len(ids)):
        w = ids[i]
        if w < 0:
            continue
        if threshold > 0.0:
            p = discard_probability(counts[w] / total_words, threshold)
            rng_state = _next_random(rng_state)
            if p >= rng_state / 2147483647.0:
                continue
        out[n] = w
        n += 1
    return out[:n], rng_state


@njit(fastmath=True, cache=True)
def _hs_update(hidden, syn1, points, codes, code_lens, word,
               alpha, update, err):
    """Hierarchical softmax along *word*'s path; accumulates into *err*."""
    dim = hidden.shape[0]
    for j in range(code_lens[word]):
        node = points[word, j]
        x = np.float32(0.0)
        for d in range(dim):
            x += hidden[d] * syn1[node, d]
        if x <= -MAX_EXP or x >= MAX_EXP:
            continue
        pred = np.float32(1.0) / (np.float32(1.0) + np.exp(-x))
        g = np.float32(-alpha * (pred - np.float32(codes[word, j])))
        for d in range(dim):
            err[d] += g * syn1[node, d]
        if update:
            for d in range(dim):
                syn1[node, d] += g * hidden[d]


@njit(fastmath=True, cache=True)
def _ns_update(hidden, syn1neg, word, table, negative,
               alpha, update, err, rng_state):
    """One positive and *negative* sampled targets; accumulates into *err*.

    Returns rng_state.
    """
    dim = hidden.shape[0]
    table_size = np.int64(len(table))
    for k in range(negative + 1):
        if k == 0:
            target = np.int64(word)
            label = np.float32(1.0)
        else:
            rng_state = _next_random(rng_state)
            target = np.int64(table[rng_state % table_size])
            if target == word:
                continue
            label = np.float32(0.0)

        x = np.float32(0.0)
        for d in range(dim):
            x += hidden[d] * syn1neg[target, d]
        if x >= MAX_EXP:
            pred = np.float32(1.0)
        elif x <= -MAX_EXP:
            pred = np.float32(0.0)
        else:
            pred = np.float32(1.0) / (np.float32(1.0) + np.exp(-x))
        g = np.float32(alpha * (label - pred))

        for d in range(dim):
            err[d] += g * syn1neg[target, d]
        if update:
            for d in range(dim):
                syn1neg[target, d] += g * hidden[d]
    return rng_state


@njit(fastmath=True, cache=True)
def _train_cbow(words, pos, sent_row, syn0, syn1, syn1neg, sentences,
                points, codes, code_lens, table, window, negative, hs,
                no_average, alpha, update, hidden, err, rng_state):
    """CBOW (PV-DM when sent_row >= 0) for the word at *pos*."""
    dim = syn0.shape[1]
    n = len(words)
    rng_state = _next_random(rng_state)
    b = np.int64(1) + rng_state % np.int64(window)

    for d in range(dim):
        hidden[d] = np.float32(0.0)
        err[d] = np.float32(0.0)
    count = 0
    for p in range(pos - b, pos + b + 1):
        if p < 0 or p >= n or p == pos:
            continue
        row = words[p]
        for d in range(dim):
            hidden[d] += syn0[row, d]
        count += 1
    if sent_row >= 0:
        for d in range(dim):
            hidden[d] += sentences[sent_row, d]
        count += 1
    if count == 0:
        return rng_state

    divisor = np.float32(1.0) if no_average else np.float32(count)
    for d in range(dim):
        hidden[d] /= divisor

    word = words[pos]
    if hs:
        _hs_update(hidden, syn1, points, codes, code_lens, word,
                   alpha, update, err)
    if negative > 0:
        rng_state = _ns_update(hidden, syn1neg, word, table, negative,
                               alpha, update, err, rng_state)

    if update:
        for p in range(pos - b, pos + b + 1):
            if p < 0 or p >= n or p == pos:
                continue
            row = words[p]
            for d in range(dim):
                syn0[row, d] += err[d] / divisor
    if sent_row >= 0:
        for d in range(dim):
            sentences[sent_row, d] += err[d] / divisor
    return rng_state


@njit(fastmath=True, cache=True)
def _train_skip_gram(words, pos, syn0, syn1, syn1neg, points, codes,
                     code_lens, table, window, negative, hs, alpha, update,
                     err, rng_state):
    """Skip-gram: the center word predicts each word of its window."""
    dim = syn0.shape[1]
    n = len(words)
    rng_state = _next_random(rng_state)
    b = np.int64(1) + rng_state % np.int64(window)
    center = words[pos]
    hidden = syn0[center]

    for p in range(pos - b, pos + b + 1):
        if p < 0 or p >= n or p == pos:
            continue
        for d in range(dim):
            err[d] = np.float32(0.0)
        target = words[p]
        if hs:
            _hs_update(hidden, syn1, points, codes, code_lens, target,
                       alpha, update, err)
        if negative > 0:
            rng_state = _ns_update(hidden, syn1neg, target, table, negative,
                                   alpha, update, err, rng_state)
        if update:
            for d in range(dim):
                syn0[center, d] += err[d]
    return rng_state


@njit(fastmath=True, cache=True)
def _train_dbow(words, pos, sent_row, syn1, syn1neg, sentences, points,
                codes, code_lens, table, negative, hs, alpha, update,
                err, rng_state):
    """DBOW: the paragraph vector alone predicts the word at *pos*."""
    dim = sentences.shape[1]
    for d in range(dim):
        err[d] = np.float32(0.0)
    hidden = sentences[sent_row]
    word = words[pos]
    if hs:
        _hs_update(hidden, syn1, points, codes, code_lens, word,
                   alpha, update, err)
    if negative > 0:
        rng_state = _ns_update(hidden, syn1neg, word, table, negative,
                               alpha, update, err, rng_state)
    for d in range(dim):
        sentences[sent_row, d] += err[d]
    return rng_state


@njit(fastmath=True, cache=True, nogil=True)
def _train_sentence(ids, sent_row, syn0, syn1, syn1neg, sentences,
                    points, codes, code_lens, table, counts, total_words,
                    subsampling, window, negative, hs, skip_gram,
                    no_average, alpha, update, rng_state):
    """Train on one encoded sentence without any locking.

    Runs without the GIL, so worker threads update the shared matrices
    concurrently (Hogwild). Returns rng_state.
    """
    words, rng_state = _subsample(ids, counts, total_words, subsampling,
                                  rng_state)
    dim = syn0.shape[1]
    hidden = np.empty(dim, np.float32)
    err = np.empty(dim, np.float32)

    for pos in range(len(words)):
        if skip_gram and sent_row >= 0:
            rng_state = _train_dbow(
                words, pos, sent_row, syn1, syn1neg, sentences,
                points, codes, code_lens, table, negative, hs,
                alpha, update, err, rng_state)
        elif skip_gram:
            rng_state = _train_skip_gram(
                words, pos, syn0, syn1, syn1neg, points, codes,
                code_lens, table, window, negative, hs, alpha, update,
                err, rng_state)
        else:
            rng_state = _train_cbow(
                words, pos, sent_row, syn0, syn1, syn1neg, sentences,
                points, codes, code_lens, table, window, negative, hs,
                no_average, alpha, update, hidden, err, rng_state)
    return rng_state


# ── consistency policies ─────────────────────────────────────────────────────


class HogwildUpdates:
    """Lock-free updates: threads race on shared rows.

    Concurrent writes to one row may interleave or be lost element-wise;
    SGD tolerates the staleness, so only aggregate convergence holds.
    """

    name = "hogwild"

    def train_sentence(self, model: MonolingualModel, ids: np.ndarray,
                       sent_row: int, alpha: float, rng_state: int,
                       update: bool = True, sentences=None) -> int:
        c, v, w = model.config, model.vocab, model.weights
        if sentences is None:
            sentences = model._sentence_matrix()
        return _train_sentence(
            ids, sent_row, w.input, w.output_hs, w.output, sentences,
            v.points, v.codes, v.code_lens, model.table.table,
            v.counts, float(v.word_count), float(c.subsampling),
            c.window_size, c.negative, c.hierarchical_softmax,
            c.skip_gram, c.no_average, float(alpha), update, rng_state)


class LockedUpdates:
    """Every access to ``input``, ``output`` and ``output_hs`` holds that
    matrix's own mutex. Paragraph vectors are not locked."""

    name = "locked"

    def __init__(self):
        self._locks = {"input": threading.Lock(),
                       "output": threading.Lock(),
                       "output_hs": threading.Lock()}

    def train_sentence(self, model: MonolingualModel, ids: np.ndarray,
                       sent_row: int, alpha: float, rng_state: int,
                       update: bool = True, sentences=None) -> int:
        c, v = model.config, model.vocab
        if sentences is None:
            sentences = model._sentence_matrix()
        words, rng_state = _subsample(ids, v.counts, float(v.word_count),
                                      float(c.subsampling), rng_state)
        for pos in range(len(words)):
            if c.skip_gram and sent_row >= 0:
                rng_state = self._dbow(model, words, pos, sentences[sent_row],
                                       alpha, update, rng_state)
            elif c.skip_gram:
                rng_state = self._skip_gram(model, words, pos, alpha,
                                            update, rng_state)
            else:
                rng_state = self._cbow(model, words, pos, sent_row,
                                       sentences, alpha, update, rng_state)
        return rng_state

    def _outputs(self, model, word, hidden, alpha, update, err, rng_state):
        c, v, w = model.config, model.vocab, model.weights
        if c.hierarchical_softmax:
            with self._locks["output_hs"]:
                _hs_update(hidden, w.output_hs, v.points, v.codes,
                           v.code_lens, word, alpha, update, err)
        if c.negative > 0:
            with self._locks["output"]:
                rng_state = _ns_update(hidden, w.output, word,
                                       model.table.table, c.negative,
                                       alpha, update, err, rng_state)
        return rng_state

    def _cbow(self, model, words, pos, sent_row, sentences, alpha, update,
              rng_state):
        c, w = model.config, model.weights
        rng_state = _next_random(rng_state)
        b = 1 + rng_state % c.window_size
        context = [words[p] for p in range(pos - b, pos + b + 1)
                   if 0 <= p < len(words) and p != pos]
        hidden = np.zeros(w.dim, np.float32)
        with self._locks["input"]:
            for row in context:
                hidden += w.input[row]
        count = len(context)
        if sent_row >= 0:
            hidden += sentences[sent_row]
            count += 1
        if count == 0:
            return rng_state

        divisor = np.float32(1.0 if c.no_average else count)
        hidden /= divisor
        err = np.zeros(w.dim, np.float32)
        rng_state = self._outputs(model, int(words[pos]), hidden, alpha,
                                  update, err, rng_state)
        err /= divisor
        if update:
            with self._locks["input"]:
                for row in context:
                    w.input[row] += err
        if sent_row >= 0:
            sentences[sent_row] += err
        return rng_state

    def _skip_gram(self, model, words, pos, alpha, update, rng_state):
        c, w = model.config, model.weights
        rng_state = _next_random(rng_state)
        b = 1 + rng_state % c.window_size
        center = int(words[pos])
        for p in range(pos - b, pos + b + 1):
            if p < 0 or p >= len(words) or p == pos:
                continue
            with self._locks["input"]:
                hidden = w.input[center].copy()
            err = np.zeros(w.dim, np.float32)
            rng_state = self._outputs(model, int(words[p]), hidden, alpha,
                                      update, err, rng_state)
            if update:
                with self._locks["input"]:
                    w.input[center] += err
        return rng_state

    def _dbow(self, model, words, pos, sent_vec, alpha, update, rng_state):
        err = np.zeros(len(sent_vec), np.float32)
        rng_state = self._outputs(model, int(words[pos]), sent_vec, alpha,
                                  update, err, rng_state)
        sent_vec += err
        return rng_state


# ── learning-rate schedule ───────────────────────────────────────────────────


def _print_progress(alpha: float, fraction: float):
    print(f"\rAlpha: {alpha:f}  Progress: {100.0 * fraction:.2f}%",
          end="", file=sys.stderr)


class LearningRateSchedule:
    """Words-processed counter shared by all workers, and the learning rate
    derived from it. The lock covers only the counter and the rate."""

    def __init__(self, initial: float, total_words: int, iterations: int,
                 observer: Callable[[float, float], None] | None = None):
        self.initial = initial
        self.total = max(total_words * iterations, 1)
        self.words_processed = 0
        self.alpha = initial
        self.observer = observer
        self._lock = threading.Lock()

    def advance(self, n_words: int) -> float:
        with self._lock:
            self.words_processed += n_words
            self.alpha = learning_rate(self.initial, self.words_processed,
                                       self.total)
            if self.observer is not None:
                self.observer(self.alpha,
                              min(self.words_processed / self.total, 1.0))
            return self.alpha


def _thread_seed(seed: int, chunk_id: int) -> int:
    s = (seed * 104729 + chunk_id * 7919 + 1) % _RAND_MAX
    return s or 1


# ── model ────────────────────────────────────────────────────────────────────


class MonolingualModel:
    """word2vec / paragraph-vector model trained with multithreaded SGD.

    ::

        model = MonolingualModel(Config(dimension=100, skip_gram=True))
        model.train("corpus.txt")
        model.word_vector("cat")
    """

    __slots__ = ("config", "vocab", "table", "weights", "consistency",
                 "progress", "training_lines", "training_words",
                 "words_processed")

    def __init__(self, config: Config | None = None, *,
                 progress: Callable[[float, float], None] | None = None):
        self.config = config or Config()
        self.vocab: Vocab | None = None
        self.table: UnigramTable | None = None
        self.weights: WeightStore | None = None
        self.consistency = (LockedUpdates() if self.config.sync_sgd
                            else HogwildUpdates())
        if progress is None and self.config.verbose > 0:
            progress = _print_progress
        self.progress = progress
        self.training_lines = 0
        self.training_words = 0
        self.words_processed = 0

    # ── initialization ────────────────────────────────────────────────────

    def _require_initialized(self):
        if self.vocab is None or self.weights is None or \
                self.vocab.word_count == 0:
            raise UninitializedModelError(
                "the model needs to be trained or loaded first")

    def _read_vocab(self, path: str):
        c = self.config
        vocab = build_vocabulary(iter_lines(path))
        if c.verbose > 0:
            print(f"Vocabulary size: {len(vocab)}", file=sys.stderr)
        vocab.prune(c.min_count)
        if len(vocab) == 0:
            raise EmptyInputError(
                f"no word occurs at least {c.min_count} times")
        if c.verbose > 0:
            print(f"Reduced vocabulary size: {len(vocab)}", file=sys.stderr)
        vocab.build_tree()
        self.vocab = vocab
        self.table = UnigramTable(vocab, c.unigram_table_size)

    def _init_net(self):
        c = self.config
        rng = np.random.RandomState(c.seed)
        self.weights = WeightStore.initialize(
            len(self.vocab), self.vocab.n_internal, c.dimension,
            rng=rng, negative=c.negative > 0)

    def _ensure_table(self):
        # loaded and imported models build their sampler on first use
        if self.table is None:
            self.table = UnigramTable(self.vocab,
                                      self.config.unigram_table_size)

    def _sentence_matrix(self) -> np.ndarray:
        s = self.weights.sentences
        if s is None:
            return np.zeros((0, self.weights.dim), np.float32)
        return s

    # ── training ──────────────────────────────────────────────────────────

    def train(self, data, initialize: bool = True) -> MonolingualModel:
        """Train on *data*, a file path (one sentence per line) or an
        iterable of token lists.

        With ``initialize=True`` the vocabulary, Huffman tree and weights
        are rebuilt from *data*; otherwise the current ones are trained
        further. Paragraph vectors are always reallocated.
        """
        if not isinstance(data, (str, os.PathLike)):
            tmp = tempfile.NamedTemporaryFile(
                mode="w", suffix=".txt", delete=False, encoding="utf-8")
            try:
                for tokens in data:
                    tmp.write(" ".join(tokens) + "\n")
                tmp.close()
                return self.train(tmp.name, initialize=initialize)
            finally:
                try:
                    os.unlink(tmp.name)
                except OSError:
                    pass

        path = os.fspath(data)
        c = self.config
        _check_corpus(path)
        if c.verbose > 0:
            print(f"Training file: {path}", file=sys.stderr)

        if initialize:
            if c.verbose > 0:
                print("Creating new model", file=sys.stderr)
            self._read_vocab(path)
            self._init_net()
        else:
            self._require_initialized()
        self._ensure_table()

        chunks = chunkify(path, c.threads)
        if chunks.line_count < c.threads:
            chunks = chunkify(path, chunks.line_count)
        self.training_lines = chunks.line_count
        self.training_words = chunks.word_count
        if c.verbose > 0:
            print(f"Number of lines: {chunks.line_count}, "
                  f"words: {chunks.word_count}", file=sys.stderr)

        if c.sent_vector:
            # no incremental training for paragraph vectors
            self.weights.init_sentences(
                chunks.line_count, np.random.RandomState(c.seed + 1))
        else:
            self.weights.sentences = None

        schedule = LearningRateSchedule(c.learning_rate, chunks.word_count,
                                        c.iterations, self.progress)
        t0 = time.time()
        n_chunks = len(chunks.starts)
        if n_chunks == 1:
            self._train_chunk(path, chunks, 0, schedule)
        else:
            errors: list[BaseException] = []

            def worker(chunk_id):
                try:
                    self._train_chunk(path, chunks, chunk_id, schedule)
                except BaseException as e:
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(i,),
                                        name=f"multivec-train-{i}")
                       for i in range(n_chunks)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            if errors:
                raise errors[0]

        self.words_processed = schedule.words_processed
        if c.verbose > 0:
            print(f"\nTraining time: {time.time() - t0:.2f}s",
                  file=sys.stderr)
        return self

    def _train_chunk(self, path: str, chunks: Chunks, chunk_id: int,
                     schedule: LearningRateSchedule):
        c = self.config
        starts = chunks.starts
        last = chunk_id == len(starts) - 1
        rng_state = _thread_seed(c.seed, chunk_id)
        alpha = schedule.alpha
        policy = self.consistency

        with open(path, "rb") as f:
            for _ in range(c.iterations):
                word_count = 0
                f.seek(starts[chunk_id])
                sent_id = chunk_id * chunks.lines_per_chunk
                while True:
                    raw = f.readline()
                    if not raw:
                        break
                    ids = self.vocab.encode(tokenize(raw))
                    sent_row = sent_id if c.sent_vector else -1
                    rng_state = policy.train_sentence(
                        self, ids, sent_row, alpha, rng_state)
                    word_count += int(np.count_nonzero(ids >= 0))
                    sent_id += 1

                    if word_count >= PROGRESS_STEP:
                        alpha = schedule.advance(word_count)
                        word_count = 0

                    # stop at the beginning of the next chunk
                    if not last and f.tell() >= starts[chunk_id + 1]:
                        break
                alpha = schedule.advance(word_count)

    # ── vectors ───────────────────────────────────────────────────────────

    def word_vector(self, word: str,
                    policy: VectorPolicy = VectorPolicy.INPUT) -> np.ndarray:
        """Embedding of *word*; raises OutOfVocabularyError."""
        self._require_initialized()
        return self.weights.word_vector(self.vocab[word].index, policy)

    def sentence_vector(self, sentence: str) -> np.ndarray:
        """Online paragraph vector for *sentence* with the model frozen."""
        self._require_initialized()
        self._ensure_table()
        c = self.config
        ids = self.vocab.encode(tokenize(sentence))
        ids = ids[ids >= 0]
        if len(ids) == 0:
            raise EmptySequenceError(
                "sentence has no in-vocabulary words")

        sent = np.zeros((1, self.weights.dim), np.float32)
        rng_state = _thread_seed(c.seed, 0)
        for k in range(c.iterations):
            alpha = c.learning_rate * (1.0 - k / c.iterations)
            rng_state = _train_sentence(
                ids, 0, self.weights.input, self.weights.output_hs,
                self.weights.output, sent, self.vocab.points,
                self.vocab.codes, self.vocab.code_lens, self.table.table,
                self.vocab.counts, float(self.vocab.word_count), 0.0,
                c.window_size, c.negative, c.hierarchical_softmax,
                c.skip_gram, c.no_average, float(alpha), False, rng_state)
        return sent[0]

    def sentence_vectors(self, path: str) -> np.ndarray:
        """Online paragraph vectors for every line of *path*; lines without
        known words get zero vectors."""
        _check_corpus(path)
        rows = []
        with open(path, "rb") as f:
            for raw in f:
                try:
                    rows.append(self.sentence_vector(raw.decode(
                        "utf-8", errors="replace")))
                except EmptySequenceError:
                    rows.append(np.zeros(self.weights.dim, np.float32))
        return np.vstack(rows)

    def words(self) -> list[tuple[str, int]]:
        self._require_initialized()
        return [(e.word, e.count) for e in self.vocab.sorted_entries()]

    # ── similarity queries ────────────────────────────────────────────────

    def similarity(self, word1: str, word2: str,
                   policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        """Cosine similarity; 0.0 when either word is unknown."""
        self._require_initialized()
        e1, e2 = self.vocab.lookup(word1), self.vocab.lookup(word2)
        if e1 is UNK or e2 is UNK:
            return 0.0
        if e1.index == e2.index:
            return 1.0
        return _cosine(self.weights.word_vector(e1.index, policy),
                       self.weights.word_vector(e2.index, policy))

    def distance(self, word1: str, word2: str,
                 policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        return (1.0 - self.similarity(word1, word2, policy)) / 2.0

    def closest_to_vector(self, vec: np.ndarray, n: int = 10,
                          policy: VectorPolicy = VectorPolicy.INPUT,
                          exclude: int = -1) -> list[tuple[str, float]]:
        self._require_initialized()
        sims = _normalize_rows(self.weights.matrix(policy)) @ (
            vec / max(float(np.linalg.norm(vec)), 1e-10))
        if exclude >= 0:
            sims[exclude] = -np.inf
        entries = self.vocab.by_index()
        top = np.argsort(-sims, kind="stable")[:n]
        return [(entries[i].word, float(sims[i])) for i in top
                if i != exclude]

    def closest(self, word: str, n: int = 10,
                policy: VectorPolicy = VectorPolicy.INPUT
                ) -> list[tuple[str, float]]:
        """The *n* most similar words to *word* (excluding itself)."""
        self._require_initialized()
        index = self.vocab[word].index
        return self.closest_to_vector(
            self.weights.word_vector(index, policy), n, policy,
            exclude=index)

    def closest_among(self, word: str, words: list[str],
                      policy: VectorPolicy = VectorPolicy.INPUT
                      ) -> list[tuple[str, float]]:
        """*words* sorted by similarity to *word*; unknown ones dropped."""
        v1 = self.word_vector(word, policy)
        res = [(w, _cosine(v1, self.word_vector(w, policy)))
               for w in words if w in self.vocab]
        return sorted(res, key=lambda p: -p[1])

    def similarity_ngrams(self, seq1: str, seq2: str,
                          policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        """Mean position-wise similarity of two equal-length sequences."""
        words1, words2 = tokenize(seq1), tokenize(seq2)
        if len(words1) != len(words2):
            raise DimensionMismatchError(
                f"sequences have different lengths "
                f"({len(words1)} vs {len(words2)})")
        sims = [self.similarity(a, b, policy) for a, b in zip(words1, words2)
                if a in self.vocab and b in self.vocab]
        if not sims:
            raise EmptySequenceError("all word pairs are out of vocabulary")
        return float(np.mean(sims))

    def _bag(self, words, weights=None, policy=VectorPolicy.INPUT):
        self._require_initialized()
        acc = None
        for i, word in enumerate(words):
            try:
                v = self.word_vector(word, policy)
            except OutOfVocabularyError:
                continue
            v = v * weights[i] if weights is not None else v
            acc = v.copy() if acc is None else acc + v
        return acc

    def similarity_sentence(self, seq1: str, seq2: str,
                            policy: VectorPolicy = VectorPolicy.INPUT
                            ) -> float:
        """Cosine of summed word vectors; unknown words are skipped."""
        return _bag_cosine(self._bag(tokenize(seq1), policy=policy),
                           self._bag(tokenize(seq2), policy=policy))

    def similarity_sentence_syntax(self, seq1: str, seq2: str, tags1: str,
                                   tags2: str, idf1, idf2,
                                   alpha: float = 0.0,
                                   policy: VectorPolicy = VectorPolicy.INPUT
                                   ) -> float:
        """Sentence similarity with words weighted by
        ``pos_weight ** (1 - alpha) * idf ** alpha``."""
        w1, t1 = _syntax_weights(tokenize(seq1), tokenize(tags1), idf1, alpha)
        w2, t2 = _syntax_weights(tokenize(seq2), tokenize(tags2), idf2, alpha)
        return _bag_cosine(self._bag(w1, t1, policy),
                           self._bag(w2, t2, policy))

    def soft_wer(self, hyp: str, ref: str,
                 policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        """Word error rate with embedding distance as substitution cost."""
        s1, s2 = tokenize(hyp), tokenize(ref)
        if not s2:
            raise EmptySequenceError("reference is empty")
        d = np.zeros((len(s1) + 1, len(s2) + 1), np.float64)
        d[:, 0] = np.arange(len(s1) + 1)
        d[0, :] = np.arange(len(s2) + 1)
        for i in range(1, len(s1) + 1):
            for j in range(1, len(s2) + 1):
                sub = self.distance(s1[i - 1], s2[j - 1], policy)
                d[i, j] = min(d[i - 1, j] + 1, d[i, j - 1] + 1,
                              d[i - 1, j - 1] + sub)
        return float(d[-1, -1] / len(s2))

    # ── I/O ──────────────────────────────────────────────────────────────

    def save_vectors(self, path: str,
                     policy: VectorPolicy = VectorPolicy.INPUT,
                     binary: bool = False, norm: bool = False):
        """Write word vectors in word2vec text or binary format."""
        self._require_initialized()
        c = self.config
        if c.verbose > 0:
            fmt = "binary" if binary else "text"
            print(f"Saving embeddings in {fmt} format to {path}",
                  file=sys.stderr)
        mat = self.weights.matrix(policy)
        entries = self.vocab.sorted_entries()
        with open(path, "wb") as f:
            f.write(f"{len(entries)} {mat.shape[1]}\n".encode("utf-8"))
            for e in entries:
                vec = mat[e.index]
                if norm:
                    vec = vec / max(float(np.linalg.norm(vec)), 1e-10)
                if binary:
                    f.write(e.word.encode("utf-8") + b" ")
                    f.write(np.asarray(vec, dtype="<f4").tobytes())
                    f.write(b"\n")
                else:
                    f.write((e.word + " " + _format_row(vec) + "\n")
                            .encode("utf-8"))

    def save_sentence_vectors(self, path: str, norm: bool = False):
        """One line of paragraph-vector values per training sentence."""
        if self.weights is None or self.weights.sentences is None:
            raise UninitializedModelError(
                "no paragraph vectors (train with sent_vector=True)")
        with open(path, "w", encoding="utf-8") as f:
            for vec in self.weights.sentences:
                if norm:
                    vec = vec / max(float(np.linalg.norm(vec)), 1e-10)
                f.write(_format_row(vec) + "\n")

    def save(self, path: str) -> str:
        """Persist vocabulary, tree, weights and config.

        A missing ``.npz`` suffix is appended; returns the written path.
        """
        self._require_initialized()
        path = _npz_path(path)
        c, v, w = self.config, self.vocab, self.weights
        if c.verbose > 0:
            print(f"Saving model as {path}", file=sys.stderr)
        entries = v.by_index()
        np.savez_compressed(
            path,
            words=np.array([e.word for e in entries], dtype=object),
            counts=v.counts, codes=v.codes, points=v.points,
            code_lens=v.code_lens,
            input=w.input, output=w.output, output_hs=w.output_hs,
            sentences=self._sentence_matrix(),
            meta=np.array([getattr(c, f.name) for f in fields(Config)
                           if f.type in ("int", "bool")], dtype=np.int64),
            fmeta=np.array([c.subsampling, c.learning_rate]),
            stats=np.array([self.training_lines, self.training_words]),
        )
        return path

    @classmethod
    def load(cls, path: str, **overrides) -> MonolingualModel:
        """Load a model written by :meth:`save`; *overrides* replace
        config fields (e.g. ``threads=8``)."""
        if not os.path.isfile(path) and os.path.isfile(_npz_path(path)):
            path = _npz_path(path)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"no such file: {path}")
        int_fields = [f.name for f in fields(Config)
                      if f.type in ("int", "bool")]
        try:
            with np.load(path, allow_pickle=True) as d:
                meta, fm = d["meta"], d["fmeta"]
                words = [str(x) for x in d["words"]]
                counts = d["counts"].astype(np.int64)
                codes, points = d["codes"], d["points"]
                code_lens = d["code_lens"].astype(np.int32)
                inp, out, out_hs = d["input"], d["output"], d["output_hs"]
                sentences = d["sentences"]
                stats = d["stats"]
        except (KeyError, OSError, EOFError, ValueError, TypeError,
                AttributeError) as e:
            raise ModelFormatError(f"cannot load model {path}: {e}") from e
        if len(meta) != len(int_fields) or len(fm) != 2:
            raise ModelFormatError(f"bad config block in {path}")

        kw = {}
        for name, val in zip(int_fields, meta):
            kw[name] = bool(val) if Config.__dataclass_fields__[
                name].type == "bool" else int(val)
        kw.update(subsampling=float(fm[0]), learning_rate=float(fm[1]))
        kw.update(overrides)
        config = Config(**kw)

        n = len(words)
        if not (len(counts) == len(code_lens) == codes.shape[0]
                == points.shape[0] == inp.shape[0] == out.shape[0] == n) \
                or inp.shape[1] != config.dimension:
            raise ModelFormatError(f"inconsistent shapes in {path}")

        vocab = Vocab()
        for i, word in enumerate(words):
            k = int(code_lens[i])
            vocab.entries[word] = VocabEntry(
                index=i, word=word, count=int(counts[i]),
                code=tuple(int(b) for b in codes[i, :k]),
                parents=tuple(int(p) for p in points[i, :k]))
        vocab.n_internal = out_hs.shape[0]
        vocab._pack(vocab.by_index())

        model = cls(config)
        model.vocab = vocab
        model.weights = WeightStore(
            inp.astype(np.float32), out.astype(np.float32),
            out_hs.astype(np.float32),
            sentences.astype(np.float32) if len(sentences) else None,
            negative=config.negative > 0)
        model.training_lines, model.training_words = int(stats[0]), \
            int(stats[1])
        if config.verbose > 0:
            print(f"Vocabulary size: {n}", file=sys.stderr)
        return model

    @classmethod
    def from_vectors(cls, words: list[str], vectors: np.ndarray,
                     counts=None, config: Config | None = None
                     ) -> MonolingualModel:
        """Wrap pre-trained vectors (e.g. from :func:`load_vectors`) so they
        can be queried and mapped. Output layers start at zero."""
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or len(words) != vectors.shape[0]:
            raise DimensionMismatchError(
                "need one vector row per word")
        if len(words) == 0:
            raise EmptyInputError("no vectors given")
        config = config or Config(dimension=vectors.shape[1], min_count=1)
        if config.dimension != vectors.shape[1]:
            raise DimensionMismatchError(
                f"config dimension {config.dimension} != "
                f"{vectors.shape[1]}")
        if counts is None:
            # keep file order as frequency order
            counts = np.arange(len(words), 0, -1)
        counts = np.asarray(counts, dtype=np.int64)
        if len(counts) != len(words):
            raise DimensionMismatchError("need one count per word")
        if np.any(counts <= 0):
            raise ValueError("word counts must be positive")

        vocab = Vocab()
        for word, count in zip(words, counts):
            vocab.entries[word] = VocabEntry(index=len(vocab.entries),
                                             word=word, count=int(count))
        vocab.build_tree()
        model = cls(config)
        model.vocab = vocab
        model.weights = WeightStore(
            vectors.copy(), np.zeros_like(vectors),
            np.zeros((vocab.n_internal, vectors.shape[1]), np.float32),
            negative=config.negative > 0)
        return model


# ── vector helpers ───────────────────────────────────────────────────────────


def _npz_path(path: str) -> str:
    path = os.fspath(path)
    return path if path.endswith(".npz") else path + ".npz"


def _cosine(v1: np.ndarray, v2: np.ndarray) -> float:
    length = float(np.linalg.norm(v1)) * float(np.linalg.norm(v2))
    if length == 0.0:
        return 0.0
    return float(np.dot(v1, v2) / length)


def _bag_cosine(v1, v2) -> float:
    if v1 is None or v2 is None:
        return 0.0
    return _cosine(v1, v2)


def _normalize_rows(mat: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(mat, axis=1, keepdims=True)
    return mat / np.maximum(norms, 1e-10)


def _format_row(vec) -> str:
    return " ".join(f"{float(x):.8g}" for x in vec)


# Universal POS tagset weights (Petrov, Das & McDonald, arXiv:1104.2086)
SYNTAX_WEIGHTS = {
    "VERB": 0.75, "NOUN": 1.00, "PRON": 0.10, "ADJ": 0.75,
    "ADV": 0.50, "ADP": 0.10, "CONJ": 0.10, "DET": 0.10,
    "NUM": 0.50, "PRT": 0.10, "X": 0.50, ".": 0.05,
}


def _syntax_weights(words, tags, idf, alpha):
    n = min(len(words), len(tags), len(idf))
    kept, weights = [], []
    for i in range(n):
        pos_weight = SYNTAX_WEIGHTS.get(tags[i])
        if pos_weight is None:
            continue
        kept.append(words[i])
        weights.append(pos_weight ** (1.0 - alpha) * float(idf[i]) ** alpha)
    return kept, weights


def load_vectors(path: str, binary: bool = False
                 ) -> tuple[list[str], np.ndarray]:
    """Read a word2vec text or binary file → (words, float32 matrix)."""
    _check_corpus(path)
    with open(path, "rb") as f:
        header = f.readline().split()
        if len(header) != 2:
            raise ModelFormatError(f"bad header in {path}")
        n, dim = int(header[0]), int(header[1])
        words = []
        mat = np.empty((n, dim), np.float32)
        for i in range(n):
            if binary:
                word = bytearray()
                while True:
                    ch = f.read(1)
                    if not ch:
                        raise ModelFormatError(f"truncated file {path}")
                    if ch == b" ":
                        break
                    if ch != b"\n":
                        word += ch
                raw = f.read(4 * dim)
                if len(raw) != 4 * dim:
                    raise ModelFormatError(f"truncated file {path}")
                mat[i] = np.frombuffer(raw, dtype="<f4")
                words.append(word.decode("utf-8", errors="replace"))
            else:
                parts = f.readline().split()
                if len(parts) != dim + 1:
                    raise ModelFormatError(
                        f"line {i + 2} of {path} has {len(parts) - 1} "
                        f"values, expected {dim}")
                words.append(parts[0].decode("utf-8", errors="replace"))
                mat[i] = np.array(parts[1:], dtype=np.float32)
    return words, mat


# ── bilingual mapping ────────────────────────────────────────────────────────

@njit(fastmath=True, cache=True)
def _mapping_epoch(mapping, src, trg, pairs, order, alpha):
    """One pass of per-example SGD on ||W x - z||^2. Returns the mean loss."""
    n_trg, n_src = mapping.shape
    n = len(order)
    y = np.empty(n_trg, np.float32)
    loss = np.float64(0.0)
    for k in range(n):
        s = pairs[order[k], 0]
        t = pairs[order[k], 1]
        for i in range(n_trg):
            acc = np.float32(0.0)
            for j in range(n_src):
                acc += mapping[i, j] * src[s, j]
            y[i] = acc - trg[t, i]
        sq = np.float64(0.0)
        for i in range(n_trg):
            sq += np.float64(y[i]) * np.float64(y[i])
        loss += sq / n
        for i in range(n_trg):
            for j in range(n_src):
                mapping[i, j] -= np.float32(alpha) * src[s, j] * y[i] \
                    * np.float32(2.0)
    return loss


def _induce_shard(src, trg):
    """Index of the closest target row for each source row."""
    if len(src) == 0:
        return np.zeros(0, np.int64)
    return np.argmax(src @ trg.T, axis=1)


class BilingualModel:
    """Two monolingual spaces and a linear map from source to target.

    ::

        bi = BilingualModel(src, trg, threads=4)
        dictionary = bi.dictionary_induction(src_count=5000, trg_count=5000)
        bi.learn_mapping(dictionary)
    """

    __slots__ = ("src_model", "trg_model", "threads", "seed", "verbose",
                 "mapping", "mapping_loss")

    START_PATIENCE = 10
    START_ALPHA = 0.01
    MIN_ALPHA = 1e-10
    EPSILON = 1e-4

    def __init__(self, src_model: MonolingualModel,
                 trg_model: MonolingualModel, *, threads: int = 1,
                 seed: int = 0, verbose: int = 0):
        src_model._require_initialized()
        trg_model._require_initialized()
        if threads < 1:
            raise ValueError("threads must be at least 1")
        self.src_model, self.trg_model = src_model, trg_model
        self.threads, self.seed, self.verbose = threads, seed, verbose
        self.mapping: np.ndarray | None = None
        self.mapping_loss: float | None = None

    # ── dictionary induction ──────────────────────────────────────────────

    def dictionary_induction(self, src_words: list[str] | None = None,
                             trg_words: list[str] | None = None, *,
                             src_count: int = 0, trg_count: int = 0,
                             policy: VectorPolicy = VectorPolicy.INPUT
                             ) -> list[tuple[str, str]]:
        """Pair each source word with its nearest target word (cosine).

        Omitted word lists default to the *src_count* / *trg_count* most
        frequent words (0 = whole vocabulary). Several source words may
        share one target word.
        """
        if src_words is None:
            src_words = _top_words(self.src_model, src_count)
        if trg_words is None:
            trg_words = _top_words(self.trg_model, trg_count)
        src_words = [w for w in src_words if w in self.src_model.vocab]
        trg_words = [w for w in trg_words if w in self.trg_model.vocab]
        if not src_words or not trg_words:
            return []

        src = _normalize_rows(np.vstack(
            [self.src_model.word_vector(w, policy) for w in src_words]))
        trg = _normalize_rows(np.vstack(
            [self.trg_model.word_vector(w, policy) for w in trg_words]))
        if src.shape[1] != trg.shape[1]:
            raise DimensionMismatchError(
                f"source dimension {src.shape[1]} != target dimension "
                f"{trg.shape[1]}")

        n_shards = min(self.threads, len(src_words))
        if n_shards == 1:
            best = _induce_shard(src, trg)
        else:
            size = len(src_words) // n_shards
            bounds = [(i * size, len(src_words) if i == n_shards - 1
                       else (i + 1) * size) for i in range(n_shards)]
            results: list[np.ndarray | None] = [None] * n_shards

            def worker(i):
                lo, hi = bounds[i]
                results[i] = _induce_shard(src[lo:hi], trg)

            threads = [threading.Thread(target=worker, args=(i,))
                       for i in range(n_shards)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            best = np.concatenate(results)
        return [(w, trg_words[int(j)]) for w, j in zip(src_words, best)]

    # ── mapping ───────────────────────────────────────────────────────────

    def learn_mapping(self, dictionary: Iterable[tuple[str, str]]
                      ) -> np.ndarray:
        """Fit W (trg_dim × src_dim) minimising sum ||W x - z||^2 over the
        dictionary's input vectors with per-example SGD.

        The rate starts at 0.01 and halves whenever 10 epochs pass without
        improving the best loss by more than 1e-4; training stops when the
        rate drops below 1e-10 or two halvings in a row bring nothing.
        """
        src_vocab, trg_vocab = self.src_model.vocab, self.trg_model.vocab
        pairs = np.array(
            [(src_vocab.entries[s].index, trg_vocab.entries[t].index)
             for s, t in dictionary if s in src_vocab and t in trg_vocab],
            dtype=np.int64).reshape(-1, 2)
        if len(pairs) == 0:
            raise EmptySequenceError(
                "dictionary has no pair known to both models")

        src = self.src_model.weights.input
        trg = self.trg_model.weights.input
        mapping = np.zeros((trg.shape[1], src.shape[1]), np.float32)
        rng = np.random.default_rng(self.seed)

        patience = self.START_PATIENCE
        best_loss = prev_best_loss = None
        alpha = self.START_ALPHA
        while alpha > self.MIN_ALPHA:
            order = rng.permutation(len(pairs))
            loss = float(_mapping_epoch(mapping, src, trg, pairs, order,
                                        alpha))

            if best_loss is not None and loss >= best_loss - self.EPSILON:
                patience -= 1
            best_loss = loss if best_loss is None else min(best_loss, loss)

            if patience == 0:
                if prev_best_loss is not None and \
                        best_loss >= prev_best_loss - self.EPSILON:
                    break
                prev_best_loss = best_loss
                alpha /= 2
                patience = self.START_PATIENCE
                if self.verbose > 0:
                    print(f"loss: {best_loss:.6f}, alpha: {alpha:g}",
                          file=sys.stderr)

        self.mapping = mapping
        self.mapping_loss = best_loss
        return mapping

    # ── queries ───────────────────────────────────────────────────────────

    def translate(self, src_word: str) -> np.ndarray:
        """Source input vector projected into the target space."""
        v = self.src_model.word_vector(src_word)
        if self.mapping is None:
            return v
        return self.mapping @ v

    def _src_vec(self, word, policy):
        if self.mapping is not None and \
                VectorPolicy(policy) == VectorPolicy.INPUT:
            return self.translate(word)
        return self.src_model.word_vector(word, policy)

    def similarity(self, src_word: str, trg_word: str,
                   policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        """Cross-lingual cosine similarity; 0.0 for unknown words."""
        if src_word not in self.src_model.vocab or \
                trg_word not in self.trg_model.vocab:
            return 0.0
        return _cosine(self._src_vec(src_word, policy),
                       self.trg_model.word_vector(trg_word, policy))

    def distance(self, src_word: str, trg_word: str,
                 policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        return 1.0 - self.similarity(src_word, trg_word, policy)

    def trg_closest(self, src_word: str, n: int = 10,
                    policy: VectorPolicy = VectorPolicy.INPUT
                    ) -> list[tuple[str, float]]:
        return self.trg_model.closest_to_vector(
            self._src_vec(src_word, policy), n, policy)

    def src_closest(self, trg_word: str, n: int = 10,
                    policy: VectorPolicy = VectorPolicy.INPUT
                    ) -> list[tuple[str, float]]:
        return self.src_model.closest_to_vector(
            self.trg_model.word_vector(trg_word, policy), n, policy)

    def _src_bag(self, words, weights=None, policy=VectorPolicy.INPUT):
        acc = None
        for i, word in enumerate(words):
            if word not in self.src_model.vocab:
                continue
            v = self._src_vec(word, policy)
            v = v * weights[i] if weights is not None else v
            acc = v.copy() if acc is None else acc + v
        return acc

    def similarity_ngrams(self, src_seq: str, trg_seq: str,
                          policy: VectorPolicy = VectorPolicy.INPUT) -> float:
        """Mean position-wise cross-lingual similarity of two equal-length
        sequences; pairs with an unknown word are skipped."""
        src_words, trg_words = tokenize(src_seq), tokenize(trg_seq)
        if len(src_words) != len(trg_words):
            raise DimensionMismatchError(
                f"sequences have different lengths "
                f"({len(src_words)} vs {len(trg_words)})")
        sims = [self.similarity(s, t, policy)
                for s, t in zip(src_words, trg_words)
                if s in self.src_model.vocab and t in self.trg_model.vocab]
        if not sims:
            raise EmptySequenceError("all word pairs are out of vocabulary")
        return float(np.mean(sims))

    def similarity_sentence(self, src_seq: str, trg_seq: str,
                            policy: VectorPolicy = VectorPolicy.INPUT
                            ) -> float:
        return _bag_cosine(self._src_bag(tokenize(src_seq), policy=policy),
                           self.trg_model._bag(tokenize(trg_seq),
                                               policy=policy))

    def similarity_sentence_syntax(self, src_seq: str, trg_seq: str,
                                   src_tags: str, trg_tags: str,
                                   src_idf, trg_idf, alpha: float = 0.0,
                                   policy: VectorPolicy = VectorPolicy.INPUT
                                   ) -> float:
        """Cross-lingual sentence similarity with POS and IDF word weights,
        as in :meth:`MonolingualModel.similarity_sentence_syntax`."""
        w1, t1 = _syntax_weights(tokenize(src_seq), tokenize(src_tags),
                                 src_idf, alpha)
        w2, t2 = _syntax_weights(tokenize(trg_seq), tokenize(trg_tags),
                                 trg_idf, alpha)
        return _bag_cosine(self._src_bag(w1, t1, policy),
                           self.trg_model._bag(w2, t2, policy))


def _top_words(model: MonolingualModel, count: int) -> list[str]:
    entries = model.vocab.sorted_entries()
    if count > 0:
        entries = entries[:count]
    return [e.word for e in entries]


def read_dictionary(path: str) -> list[tuple[str, str]]:
    """Read ``source target`` pairs, one per line."""
    pairs = []
    for tokens in iter_lines(path):
        if len(tokens) >= 2:
            pairs.append((tokens[0], tokens[1]))
    return pairs


# ── CLI ──────────────────────────────────────────────────────────────────────


def _cli():
    p = argparse.ArgumentParser(prog="multivec")
    sub = p.add_subparsers(dest="cmd")

    tr = sub.add_parser("train")
    tr.add_argument("corpus")
    tr.add_argument("-o", "--output", required=True,
                    help="model path (.npz is appended if missing)")
    tr.add_argument("--dimension",        type=int,   default=100)
    tr.add_argument("--window-size",      type=int,   default=5)
    tr.add_argument("--subsampling",      type=float, default=1e-3)
    tr.add_argument("--learning-rate",    type=float, default=0.05)
    tr.add_argument("--iterations",       type=int,   default=5)
    tr.add_argument("--threads",          type=int,   default=4)
    tr.add_argument("--min-count",        type=int,   default=5)
    tr.add_argument("--negative",         type=int,   default=5)
    tr.add_argument("--hs",               action="store_true")
    tr.add_argument("--skip-gram",        action="store_true")
    tr.add_argument("--sent-vector",      action="store_true")
    tr.add_argument("--no-average",       action="store_true")
    tr.add_argument("--sync-sgd",         action="store_true")
    tr.add_argument("--seed",             type=int,   default=0)
    tr.add_argument("-v", "--verbose",    action="count", default=0)
    tr.add_argument("--save-vectors")
    tr.add_argument("--save-sent-vectors")
    tr.add_argument("--binary",           action="store_true")
    tr.add_argument("--policy",           type=int,   default=0)

    cl = sub.add_parser("closest")
    cl.add_argument("model")
    cl.add_argument("-n", type=int, default=10)
    cl.add_argument("--policy", type=int, default=0)

    al = sub.add_parser("align")
    al.add_argument("src_model")
    al.add_argument("trg_model")
    al.add_argument("-o", "--output", required=True)
    al.add_argument("--dictionary")
    al.add_argument("--src-count", type=int, default=5000)
    al.add_argument("--trg-count", type=int, default=5000)
    al.add_argument("--threads",   type=int, default=4)
    al.add_argument("--seed",      type=int, default=0)
    al.add_argument("-v", "--verbose", action="count", default=0)

    args = p.parse_args()
    if args.cmd == "train":
        config = Config(
            dimension=args.dimension, window_size=args.window_size,
            subsampling=args.subsampling, learning_rate=args.learning_rate,
            iterations=args.iterations, threads=args.threads,
            min_count=args.min_count, negative=args.negative,
            hierarchical_softmax=args.hs, skip_gram=args.skip_gram,
            sent_vector=args.sent_vector, no_average=args.no_average,
            sync_sgd=args.sync_sgd, seed=args.seed, verbose=args.verbose)
        m = MonolingualModel(config).train(args.corpus)
        m.save(args.output)
        if args.save_vectors:
            m.save_vectors(args.save_vectors, VectorPolicy(args.policy),
                           binary=args.binary)
        if args.save_sent_vectors:
            m.save_sentence_vectors(args.save_sent_vectors)
    elif args.cmd == "closest":
        m = MonolingualModel.load(args.model)
        for line in sys.stdin:
            word = line.strip()
            if not word:
                continue
            try:
                res = m.closest(word, n=args.n, policy=args.policy)
            except OutOfVocabularyError as e:
                print(e, file=sys.stderr)
                continue
            print(" ".join(f"{w} {sim:.4f}" for w, sim in res))
    elif args.cmd == "align":
        src = MonolingualModel.load(args.src_model)
        trg = MonolingualModel.load(args.trg_model)
        bi = BilingualModel(src, trg, threads=args.threads, seed=args.seed,
                            verbose=args.verbose)
        if args.dictionary:
            dictionary = read_dictionary(args.dictionary)
        else:
            dictionary = bi.dictionary_induction(
                src_count=args.src_count, trg_count=args.trg_count)
        bi.learn_mapping(dictionary)
        np.save(args.output, bi.mapping)
        print(f"pairs\t{len(dictionary)}")
        print(f"loss\t{bi.mapping_loss:.6f}")
    else:
        p.print_help()


if __name__ == "__main__":
    _cli()
