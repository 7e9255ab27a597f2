"""Scoped ownership of a machine lease for one caller."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from flaps.clients.errors import FlapsError, LeaseNotHeldError
from flaps.clients.machines import MachinesClient
from flaps.models import MachineLease, MachineRef, machine_id

logger = logging.getLogger(__name__)


class LeaseCoordinator:
    """Tracks the nonce of a lease one caller holds on one machine.

    Leases are advisory. The nonce must still be passed to every mutating
    call made while the lease is held, e.g.
    ``await client.start(machine, nonce=coordinator.nonce)``.
    """

    def __init__(
        self,
        client: MachinesClient,
        machine: MachineRef,
        ttl: int | None = None,
    ) -> None:
        self._client = client
        self._machine_id = machine_id(machine)
        self._ttl = ttl
        self._lease: MachineLease | None = None

    @property
    def lease(self) -> MachineLease | None:
        return self._lease

    @property
    def nonce(self) -> str | None:
        return self._lease.nonce if self._lease else None

    async def find(self) -> MachineLease | None:
        """Whoever currently holds the machine's lease, if anyone."""
        return await self._client.find_lease(self._machine_id)

    async def acquire(self) -> MachineLease:
        self._lease = await self._client.acquire_lease(self._machine_id, self._ttl)
        return self._lease

    async def refresh(self) -> MachineLease:
        if self._lease is None:
            raise LeaseNotHeldError(self._machine_id)
        self._lease = await self._client.refresh_lease(
            self._machine_id, self._lease.nonce, self._ttl
        )
        return self._lease

    async def release(self) -> None:
        if self._lease is None:
            raise LeaseNotHeldError(self._machine_id)
        # The nonce stays held until the server confirms the release.
        await self._client.release_lease(self._machine_id, self._lease.nonce)
        self._lease = None

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[MachineLease]:
        """Acquire the lease for the duration of the block, releasing it on exit.

        If the block raises, a failure to release is logged and the block's
        exception propagates.
        """
        lease = await self.acquire()
        try:
            yield lease
        except BaseException:
            try:
                await self.release()
            except FlapsError:
                logger.warning(
                    "Failed to release lease on machine %s", self._machine_id, exc_info=True
                )
            raise
        await self.release()
