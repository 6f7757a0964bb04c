"""Keeps a fresh view of each observed wallet's on-chain position."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..config import ReconcilerConfig
from ..interfaces.chain import PositionSource
from ..models import PositionSnapshot

logger = logging.getLogger(__name__)

# Snapshots buffered per subscriber; a slow reader loses the oldest first.
SUBSCRIBER_BUFFER = 16


def _offer(queue: asyncio.Queue, item: PositionSnapshot | None) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)



@dataclass
class _Observation:
    """Per-wallet reconciliation state. Owned by the reconciler only."""

    wallet: str
    snapshot: PositionSnapshot | None = None
    loading: bool = True
    in_flight: int = 0
    last_attempt: float | None = None
    seq: int = 0
    poll_task: asyncio.Task | None = None
    subscribers: list[asyncio.Queue] = field(default_factory=list)


class PositionSubscription:
    """Current snapshot plus an async stream of every later snapshot.

    The stream ends when observation of the wallet stops.
    """

    def __init__(
        self, wallet: str, queue: asyncio.Queue, current: PositionSnapshot | None
    ) -> None:
        self.wallet = wallet
        self.current = current
        self._queue = queue

    def __aiter__(self) -> PositionSubscription:
        return self

    async def __anext__(self) -> PositionSnapshot:
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        self.current = snapshot
        return snapshot


class PositionReconciler:
    """Polls the chain for observed wallets without hammering it.

    Background refreshes run only while a wallet has an active position and
    are skipped when a fetch is already in flight or when the last attempt
    was too recent. Fetch results are stamped with a sequence number and only
    the latest one issued for a wallet is applied.
    """

    def __init__(
        self,
        source: PositionSource,
        *,
        poll_interval: float = 12.0,
        min_refresh_interval: float = 5.0,
        switch_debounce: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._poll_interval = poll_interval
        self._min_refresh_interval = min_refresh_interval
        self._switch_debounce = switch_debounce
        self._clock = clock

        self._observations: dict[str, _Observation] = {}
        self._current_wallet: str | None = None
        self._pending_switch: asyncio.TimerHandle | None = None
        self._switch_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls, source: PositionSource, config: ReconcilerConfig
    ) -> PositionReconciler:
        return cls(
            source,
            poll_interval=config.poll_interval_seconds,
            min_refresh_interval=config.min_refresh_interval_seconds,
            switch_debounce=config.switch_debounce_seconds,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def current_wallet(self) -> str | None:
        return self._current_wallet

    def is_observing(self, wallet: str) -> bool:
        return wallet in self._observations

    def is_loading(self, wallet: str) -> bool:
        obs = self._observations.get(wallet)
        return obs is not None and obs.loading

    def is_polling(self, wallet: str) -> bool:
        obs = self._observations.get(wallet)
        return obs is not None and obs.poll_task is not None and not obs.poll_task.done()

    def snapshot(self, wallet: str) -> PositionSnapshot | None:
        obs = self._observations.get(wallet)
        return obs.snapshot if obs else None

    # ------------------------------------------------------------------
    # Observation lifecycle
    # ------------------------------------------------------------------

    async def start_observing(self, wallet: str) -> PositionSnapshot | None:
        """Begin observing ``wallet`` with one foreground fetch. Idempotent."""
        obs = self._observations.get(wallet)
        if obs is not None:
            return obs.snapshot

        obs = _Observation(wallet=wallet)
        self._observations[wallet] = obs
        logger.info("Observing positions for %s", wallet)
        await self._fetch(obs, background=False)
        return obs.snapshot

    async def stop_observing(self, wallet: str) -> None:
        """Stop polling, discard the snapshot and end subscriber streams."""
        obs = self._observations.pop(wallet, None)
        if obs is None:
            return
        self._cancel_polling(obs)
        for queue in obs.subscribers:
            _offer(queue, None)
        logger.info("Stopped observing %s", wallet)

    async def refresh(self, wallet: str) -> PositionSnapshot | None:
        """Foreground re-fetch, e.g. after a new loan is opened. Not guarded."""
        obs = self._observations.get(wallet)
        if obs is None:
            return await self.start_observing(wallet)
        await self._fetch(obs, background=False)
        return obs.snapshot

    async def background_refresh(self, wallet: str) -> bool:
        """Run one guarded background refresh; returns False if it was skipped."""
        obs = self._observations.get(wallet)
        if obs is None:
            return False

        if obs.in_flight:
            logger.debug("Skipping refresh for %s: fetch already in flight", wallet)
            return False

        now = self._clock()
        if (
            obs.last_attempt is not None
            and now - obs.last_attempt < self._min_refresh_interval
        ):
            logger.debug(
                "Skipping refresh for %s: last attempt %.1fs ago",
                wallet,
                now - obs.last_attempt,
            )
            return False

        await self._fetch(obs, background=True)
        return True

    async def subscribe(self, wallet: str) -> PositionSubscription:
        await self.start_observing(wallet)
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_BUFFER)
        obs = self._observations.get(wallet)
        if obs is None:
            # Observation was stopped while the first fetch was running.
            queue.put_nowait(None)
            return PositionSubscription(wallet, queue, None)
        obs.subscribers.append(queue)
        return PositionSubscription(wallet, queue, obs.snapshot)

    async def unsubscribe(self, target: PositionSubscription | str) -> None:
        """End one subscription, or every subscription of a wallet.

        Observation stops when the last subscriber of a wallet leaves, unless
        the wallet is the current one selected by ``switch_wallet``.
        """
        if isinstance(target, str):
            await self.stop_observing(target)
            return

        obs = self._observations.get(target.wallet)
        if obs is None or target._queue not in obs.subscribers:
            return
        obs.subscribers.remove(target._queue)
        _offer(target._queue, None)
        if not obs.subscribers and target.wallet != self._current_wallet:
            await self.stop_observing(target.wallet)

    def switch_wallet(self, wallet: str | None) -> None:
        """Move observation to ``wallet`` once address changes settle.

        Must be called from a running event loop.
        """
        if self._pending_switch is not None:
            self._pending_switch.cancel()
        loop = asyncio.get_running_loop()
        self._pending_switch = loop.call_later(
            self._switch_debounce, self._begin_switch, wallet
        )

    async def close(self) -> None:
        if self._pending_switch is not None:
            self._pending_switch.cancel()
            self._pending_switch = None
        for task in list(self._switch_tasks):
            task.cancel()
        for wallet in list(self._observations):
            await self.stop_observing(wallet)
        if self._switch_tasks:
            await asyncio.gather(*self._switch_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin_switch(self, wallet: str | None) -> None:
        self._pending_switch = None
        task = asyncio.get_running_loop().create_task(self._apply_switch(wallet))
        self._switch_tasks.add(task)
        task.add_done_callback(self._switch_tasks.discard)

    async def _apply_switch(self, wallet: str | None) -> None:
        previous = self._current_wallet
        self._current_wallet = wallet
        if previous is not None and previous != wallet:
            await self.stop_observing(previous)
        if wallet is not None:
            await self.start_observing(wallet)

    async def _fetch(self, obs: _Observation, *, background: bool) -> None:
        # Everything up to the source call is synchronous: the guards in
        # background_refresh and this bookkeeping cannot interleave.
        obs.seq += 1
        seq = obs.seq
        obs.in_flight += 1
        obs.last_attempt = self._clock()
        if background and obs.snapshot is not None:
            self._publish(obs, obs.snapshot.updating())
        elif not background:
            obs.loading = True

        try:
            position = await self._source.get_position_details(obs.wallet)
            result = PositionSnapshot.from_position(position, self._clock())
        except Exception as e:
            logger.error("Error fetching position for %s: %s", obs.wallet, e)
            result = PositionSnapshot.inactive(self._clock())
        finally:
            obs.in_flight -= 1

        if self._observations.get(obs.wallet) is not obs:
            logger.debug("Discarding result for %s: no longer observed", obs.wallet)
            return
        if seq != obs.seq:
            logger.debug("Discarding stale result #%d for %s", seq, obs.wallet)
            return

        obs.loading = False
        self._publish(obs, result)
        self._sync_polling(obs)

    def _publish(self, obs: _Observation, snapshot: PositionSnapshot) -> None:
        obs.snapshot = snapshot
        for queue in obs.subscribers:
            _offer(queue, snapshot)

    def _sync_polling(self, obs: _Observation) -> None:
        if obs.snapshot is not None and obs.snapshot.has_active_position:
            if obs.poll_task is None or obs.poll_task.done():
                obs.poll_task = asyncio.get_running_loop().create_task(self._poll(obs))
                logger.info("Started real-time polling for %s", obs.wallet)
        elif obs.poll_task is not None:
            self._cancel_polling(obs)
            logger.info("Stopped real-time polling for %s", obs.wallet)

    def _cancel_polling(self, obs: _Observation) -> None:
        task, obs.poll_task = obs.poll_task, None
        # A poll loop that stops itself just exits on its next check.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll(self, obs: _Observation) -> None:
        me = asyncio.current_task()
        while obs.poll_task is me and self._observations.get(obs.wallet) is obs:
            await asyncio.sleep(self._poll_interval)
            if obs.poll_task is not me or self._observations.get(obs.wallet) is not obs:
                break
            try:
                await self.background_refresh(obs.wallet)
            except Exception as e:
                logger.error("Error in polling loop for %s: %s", obs.wallet, e)
