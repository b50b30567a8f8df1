from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memochat.repos.memory_repo import MemoryRepo
from memochat.utils.crypto import MemoryCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """What the user is asked to approve for one decryption batch."""

    session_id: str
    purpose: str
    memory_count: int


class Authorizer(Protocol):
    """Asks the key holder for permission to decrypt a batch."""

    async def authorize(self, memory_ids: Sequence[str], auth_context: AuthContext) -> bool:
        """Return True when the whole batch may be decrypted."""


class DecryptionCollaborator(Protocol):
    async def decrypt_batch(
        self, memory_ids: Sequence[str], auth_context: AuthContext
    ) -> dict[str, str]:
        """Return plaintext for every id that could be decrypted."""


class StaticAuthorizer:
    """Approves or denies every batch; for headless deployments and tests."""

    def __init__(self, approve: bool = True) -> None:
        self._approve = approve

    async def authorize(self, memory_ids: Sequence[str], auth_context: AuthContext) -> bool:
        logger.info(
            "Decryption %s for %s memories (session=%s)",
            "approved" if self._approve else "denied",
            len(memory_ids),
            auth_context.session_id,
        )
        return self._approve


class VaultDecryptor:
    """Decrypts sealed memory blobs after a single authorization prompt.

    The authorizer is asked once for the whole batch. A denied prompt or
    a missing/corrupt blob yields fewer entries in the result, never an
    exception.
    """

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        cipher: MemoryCipher,
        authorizer: Authorizer,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._cipher = cipher
        self._authorizer = authorizer

    async def decrypt_batch(
        self, memory_ids: Sequence[str], auth_context: AuthContext
    ) -> dict[str, str]:
        if not memory_ids:
            return {}

        if not await self._authorizer.authorize(list(memory_ids), auth_context):
            logger.info("Decryption batch of %s memories was not authorized", len(memory_ids))
            return {}

        async with self._sessionmaker() as db:
            repo = MemoryRepo(db)
            records = await repo.get_records(memory_ids)
            ciphertexts = await repo.get_ciphertexts([record.storage_pointer for record in records])

        pointers = {record.id: record.storage_pointer for record in records}
        plaintexts: dict[str, str] = {}
        for memory_id in memory_ids:
            pointer = pointers.get(memory_id)
            token = ciphertexts.get(pointer) if pointer else None
            if token is None:
                logger.warning("Memory %s has no ciphertext blob", memory_id)
                continue
            try:
                plaintexts[memory_id] = self._cipher.open(token)
            except ValueError:
                logger.warning("Memory %s could not be decrypted", memory_id)
        return plaintexts


class AuthorizationGuard:
    """Stops re-prompting after repeated fruitless decryption batches.

    After ``failure_limit`` consecutive batches that decrypt nothing,
    ``allow()`` returns False until ``cooldown_sec`` has passed. Any
    successful batch or an explicit ``reset()`` re-arms prompting.
    """

    def __init__(
        self,
        failure_limit: int = 3,
        cooldown_sec: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._failure_limit = max(1, failure_limit)
        self._cooldown_sec = max(0.0, cooldown_sec)
        self._clock = clock or time.monotonic
        self._failures = 0
        self._blocked_until: Optional[float] = None

    def allow(self) -> bool:
        if self._blocked_until is None:
            return True
        if self._clock() >= self._blocked_until:
            self._blocked_until = None
            self._failures = 0
            return True
        return False

    def record(self, decrypted_count: int) -> None:
        if decrypted_count > 0:
            self.reset()
            return
        self._failures += 1
        if self._failures >= self._failure_limit:
            self._blocked_until = self._clock() + self._cooldown_sec
            logger.warning(
                "Decryption prompts suppressed for %ss after %s fruitless batches",
                self._cooldown_sec,
                self._failures,
            )

    def reset(self) -> None:
        self._failures = 0
        self._blocked_until = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures
