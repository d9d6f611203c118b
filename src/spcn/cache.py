# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Per-role memoization of image factorizations.

Factorizing an image is the expensive step of a normalization, and a
typical workload normalizes many inputs against one fixed reference.  The
cache keeps one entry per :class:`Role`, keyed by an opaque image identity
and a modification timestamp:

- same identity, timestamp not advanced, same parameters → reuse;
- anything else → recompute and overwrite the slot.

Writes to a slot are serialized by a per-role lock, so concurrent calls
never factorize the same role twice for the same key.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable

import numpy as np

from spcn.factorization import Factorization
from spcn.parameters import NormalizationParameters

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    """What a source image is used for in a normalization."""

    INPUT = "input"
    REFERENCE = "reference"


@dataclass(frozen=True)
class ImageKey:
    """Identity and last-modified timestamp of a source image."""

    identity: Hashable
    timestamp: Any = 0

    @classmethod
    def for_array(cls, array: np.ndarray) -> ImageKey:
        """Key an in-memory array by a fingerprint of its contents.

        Arrays carry no modification time, so the contents stand in for the
        identity: any change to the pixels yields a new key.
        """
        array = np.asarray(array)
        digest = hashlib.blake2b(digest_size=16)
        digest.update(str((array.shape, array.dtype.str)).encode())
        digest.update(array.tobytes())
        return cls(identity=("array", digest.hexdigest()), timestamp=0)


@dataclass(frozen=True, eq=False)
class SourceImage:
    """Pixels together with the identity and timestamp used as cache key.

    Callers that track modifications themselves (for instance by file path
    and modification time, see :func:`spcn.io.read_image`) wrap their arrays
    in a ``SourceImage``; bare arrays are keyed by content.
    """

    pixels: np.ndarray
    identity: Hashable
    timestamp: Any = 0

    @property
    def key(self) -> ImageKey:
        return ImageKey(self.identity, self.timestamp)


def image_key(image: SourceImage | np.ndarray) -> ImageKey:
    """Return the cache key of *image*."""
    if isinstance(image, SourceImage):
        return image.key
    return ImageKey.for_array(np.asarray(image))


@dataclass(frozen=True)
class CacheEntry:
    """One cached factorization."""

    key: ImageKey
    parameters: NormalizationParameters
    factorization: Factorization


class FactorizationCache:
    """Two cache slots, one per :class:`Role`.

    The cache is meant to be injected into
    :class:`spcn.normalizer.StructurePreservingNormalizer` and may be shared
    between normalizers.

    :ivar computations: how many times each role was (re)computed.
    """

    def __init__(self) -> None:
        self._entries: dict[Role, CacheEntry | None] = {role: None for role in Role}
        self._locks = {role: threading.Lock() for role in Role}
        self.computations: dict[Role, int] = {role: 0 for role in Role}

    def __repr__(self) -> str:
        filled = [role.value for role, entry in self._entries.items() if entry is not None]
        return f"{type(self).__name__}(filled={filled}, computations={self.computations})"

    def entry(self, role: Role) -> CacheEntry | None:
        """Return the current entry of *role*, if any."""
        return self._entries[Role(role)]

    @staticmethod
    def is_valid(
        entry: CacheEntry | None,
        key: ImageKey,
        parameters: NormalizationParameters,
    ) -> bool:
        """Whether *entry* may be reused for *key* under *parameters*."""
        if entry is None:
            return False
        if entry.key.identity != key.identity or entry.parameters != parameters:
            return False
        try:
            return not key.timestamp > entry.key.timestamp
        except TypeError:
            return key.timestamp == entry.key.timestamp

    def get_or_compute(
        self,
        role: Role,
        key: ImageKey,
        parameters: NormalizationParameters,
        compute: Callable[[], Factorization],
    ) -> Factorization:
        """Return the cached factorization for *role*, recomputing if stale.

        :param role: Cache slot.
        :type role: Role
        :param key: Identity and timestamp of the source image.
        :type key: ImageKey
        :param parameters: Parameters the factorization depends on.
        :type parameters: NormalizationParameters
        :param compute: Produces a fresh factorization.
        :type compute: Callable[[], Factorization]
        :return: the cached or freshly computed factorization
        :rtype: Factorization
        """
        role = Role(role)
        with self._locks[role]:
            entry = self._entries[role]
            if self.is_valid(entry, key, parameters):
                logger.debug("reusing cached %s factorization", role.value)
                return entry.factorization

            factorization = compute()
            self._entries[role] = CacheEntry(key, parameters, factorization)
            self.computations[role] += 1
            logger.debug(
                "computed %s factorization (#%d)", role.value, self.computations[role]
            )
            return factorization

    def invalidate(self, role: Role | None = None) -> None:
        """Forget the entry of *role*, or of every role."""
        roles = list(Role) if role is None else [Role(role)]
        for slot in roles:
            with self._locks[slot]:
                self._entries[slot] = None
