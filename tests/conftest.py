import itertools
import threading
from typing import Callable, Iterable, Iterator

import pytest


class SequenceTokens:
    """Deterministic, thread-safe token source for tests."""

    def __init__(self, tokens: Iterable[str] | None = None) -> None:
        self._tokens: Iterator[str] = iter(tokens) if tokens is not None else (
            f"tok_{n:06d}" for n in itertools.count(1)
        )
        self._lock = threading.Lock()
        self.issued: list[str] = []

    def __call__(self) -> str:
        with self._lock:
            token = next(self._tokens)
            self.issued.append(token)
            return token


@pytest.fixture()
def tokens() -> SequenceTokens:
    return SequenceTokens()


@pytest.fixture()
def make_tokens() -> Callable[[Iterable[str]], SequenceTokens]:
    return SequenceTokens
