"""Inverted index from vocabulary words to keyframes, for place recognition."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class KeyFrameDatabase:
    """Finds keyframes that look like a query by the visual words they share.

    The vocabulary must provide ``score(bow_a, bow_b)``. Bag-of-words
    vectors are mappings from word id to weight. Keyframes must expose
    ``id``, ``bow_vec``, ``connected_keyframes()``,
    ``best_covisibility_keyframes(n)`` and the query bookkeeping attributes
    ``loop_query``, ``loop_words``, ``loop_score``, ``reloc_query``,
    ``reloc_words`` and ``reloc_score``.
    """

    def __init__(self, vocabulary) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted: dict[Any, list[Any]] = {}

    def add(self, keyframe) -> None:
        """Index ``keyframe`` under every word of its bag of words."""
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted.setdefault(word, []).append(keyframe)

    def erase(self, keyframe) -> None:
        """Remove one entry of ``keyframe`` under each of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted.get(word)
                if not entries:
                    continue
                for position, candidate in enumerate(entries):
                    if candidate is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted = {}

    def _entries(self, bow_vec) -> Iterable[Any]:
        for word in sorted(bow_vec):
            yield from self._inverted.get(word, ())

    def detect_loop_candidates(self, keyframe, min_score: float) -> list:
        """Keyframes not connected to ``keyframe`` that may close a loop with it."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []

        with self._lock:
            for candidate in self._entries(keyframe.bow_vec):
                if candidate.loop_query != keyframe.id:
                    candidate.loop_words = 0
                    if candidate not in connected:
                        candidate.loop_query = keyframe.id
                        sharing.append(candidate)
                candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * 0.8)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, candidate in scored:
            best_score = score
            acc_score = score
            best_kf = candidate
            for neighbour in candidate.best_covisibility_keyframes(10):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, 0.75 * best_acc)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes similar to ``frame``, a frame that has lost tracking."""
        sharing: list[Any] = []

        with self._lock:
            for candidate in self._entries(frame.bow_vec):
                if candidate.reloc_query != frame.id:
                    candidate.reloc_words = 0
                    candidate.reloc_query = frame.id
                    sharing.append(candidate)
                candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * 0.8)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, candidate in scored:
            best_score = score
            acc_score = score
            best_kf = candidate
            for neighbour in candidate.best_covisibility_keyframes(10):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, 0.75 * best_acc)


def _retain(accumulated: list[tuple[float, Any]], threshold: float) -> list:
    """Keyframes whose accumulated score exceeds ``threshold``, each once, in order."""
    seen: set[int] = set()
    result = []
    for score, keyframe in accumulated:
        if score > threshold and id(keyframe) not in seen:
            seen.add(id(keyframe))
            result.append(keyframe)
    return result