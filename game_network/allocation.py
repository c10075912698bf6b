"""In-memory allocation cache for scarce network units.

Units (host ports, LB listener ports) are allocated per allocation key, where
the key is the scope inside which a unit must be unique: a node name for host
ports, an LB id for shared load balancers. Every allocated unit is attributed
to exactly one pod identity.

The cache is safe under concurrent, retried admission calls:

* calls for the same pod are serialised by a per-owner lock,
* calls touching the same key are serialised by a per-key lock,
* the owner index is guarded by a short index lock.

Locks are always taken in the order owner, key, index.
"""

import threading
import time
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, replace

from game_network.exceptions import PluginError, PluginErrorType, PortExhaustedError
from game_network.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Owner:
    """Pod identity owning allocated units.

    ``key`` is the stable ``namespace/name`` of the pod. ``uid`` tells apart two
    incarnations of the same name and is empty while a pod is being created.
    """

    key: str
    uid: str = ""


@dataclass(frozen=True)
class AllocationRecord:
    """Units held by one owner under one allocation key."""

    key: str
    units: tuple[int, ...]
    owner: Owner
    allocated_at: float
    # uids of earlier incarnations of the owner that held these units
    retired_uids: frozenset[str] = frozenset()


class AllocationCache:
    """Lock-protected map from allocation key to the units in use."""

    def __init__(
        self,
        min_unit: int,
        max_unit: int,
        blocked: Iterable[int] = (),
        name: str = "",
        grace_period: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Create a cache over the inclusive unit range ``[min_unit, max_unit]``.

        Args:
            min_unit: Lowest allocatable unit
            max_unit: Highest allocatable unit
            blocked: Units inside the range that are never handed out
            name: Label used in log messages
            grace_period: Seconds a fresh record survives reconciliation while
                its pod is not yet visible in the cluster
            clock: Monotonic time source
        """
        if min_unit > max_unit:
            raise ValueError(f"min_unit ({min_unit}) must not exceed max_unit ({max_unit})")
        self.name = name
        self.min_unit = min_unit
        self.max_unit = max_unit
        self.blocked = frozenset(blocked)
        self.grace_period = grace_period
        self._clock = clock
        self._pool = [u for u in range(min_unit, max_unit + 1) if u not in self.blocked]
        self._pool_set = frozenset(self._pool)

        self._used: dict[str, dict[int, AllocationRecord]] = {}
        self._records: dict[str, AllocationRecord] = {}
        # owner key -> units set aside until the new holding is committed
        self._pending: dict[str, AllocationRecord] = {}
        self._index_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        # owner key -> [lock, waiters]; dropped once nobody waits on it
        self._owner_locks: dict[str, list] = {}

    @property
    def capacity(self) -> int:
        return len(self._pool)

    def contains(self, unit: int) -> bool:
        return unit in self._pool_set

    @contextmanager
    def _owner_guard(self, owner_key: str):
        with self._index_lock:
            entry = self._owner_locks.get(owner_key)
            if entry is None:
                entry = self._owner_locks[owner_key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._index_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._owner_locks[owner_key]

    def _key_lock(self, key: str) -> threading.Lock:
        with self._index_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _set_record(self, state: dict[int, AllocationRecord], record: AllocationRecord) -> None:
        for unit in record.units:
            state[unit] = record
        with self._index_lock:
            self._records[record.owner.key] = record

    def _drop_record(self, record: AllocationRecord) -> None:
        with self._index_lock:
            if self._records.get(record.owner.key) is record:
                del self._records[record.owner.key]

    def lookup(self, owner_key: str) -> AllocationRecord | None:
        """Return the record held by a pod, if any."""
        with self._index_lock:
            return self._records.get(owner_key)

    def keys(self) -> list[str]:
        with self._index_lock:
            return list(self._used.keys())

    def used_units(self, key: str) -> set[int]:
        with self._key_lock(key):
            return set(self._used.get(key, {}))

    def units_in_use(self, keys: Iterable[str]) -> set[int]:
        """Union of the used units of several keys."""
        used = set()
        for key in keys:
            used |= self.used_units(key)
        return used

    def free_count(self, key: str, excluded: Iterable[int] = ()) -> int:
        excluded = set(excluded)
        with self._key_lock(key):
            state = self._used.get(key, {})
            return sum(1 for u in self._pool if u not in state and u not in excluded)

    def allocate(
        self, key: str, count: int, owner: Owner, excluded: Iterable[int] = ()
    ) -> list[int]:
        """Allocate ``count`` units under ``key`` for ``owner``.

        Units are picked lowest first, skipping units in use and ``excluded``.
        The call is idempotent per owner: if the owner already holds units under
        ``key`` its holding converges to ``count`` units (kept, grown, or the
        highest surplus released). Nothing is allocated when the request cannot
        be satisfied in full.

        Raises:
            PortExhaustedError: If fewer than ``count`` units are free
            PluginError: If the owner already holds units under another key
        """
        with self._owner_guard(owner.key):
            return self._allocate_locked(key, count, owner, excluded)

    def allocate_any(
        self, keys: Iterable[str], count: int, owner: Owner, excluded: Iterable[int] = ()
    ) -> tuple[str, list[int]]:
        """Allocate under the first key of ``keys`` with enough free units.

        A holding the owner already has under one of ``keys`` is reused first.
        When it cannot grow in place the whole count moves to the next key that
        can serve it.

        Returns:
            The chosen key and the allocated units
        """
        with self._owner_guard(owner.key):
            reservation = self._reserve_locked(keys, count, owner, excluded)
            return reservation.key, self._commit_locked(reservation)

    def reserve(
        self, keys: Iterable[str], count: int, owner: Owner, excluded: Iterable[int] = ()
    ) -> AllocationRecord:
        """Set aside ``count`` units for a new holding of ``owner``.

        Keys are tried like :meth:`allocate_any`, but the current holding stays
        in place: units it shares with the reservation are kept, the others
        remain attributed to the owner until :meth:`commit`. :meth:`abort`
        frees the units taken for the reservation only. A reservation still
        pending for the owner is aborted first.

        Raises:
            PortExhaustedError: If no key has room for ``count`` units
        """
        with self._owner_guard(owner.key):
            return self._reserve_locked(keys, count, owner, excluded)

    def commit(self, reservation: AllocationRecord) -> list[int]:
        """Make a reservation the owner's holding and free what it replaces."""
        with self._owner_guard(reservation.owner.key):
            return self._commit_locked(reservation)

    def abort(self, reservation: AllocationRecord) -> list[int]:
        """Free the units taken for a reservation, keeping the previous holding."""
        with self._owner_guard(reservation.owner.key):
            return self._abort_locked(reservation)

    @contextmanager
    def reserving(
        self, keys: Iterable[str], count: int, owner: Owner, excluded: Iterable[int] = ()
    ):
        """Reserve units, commit them if the block succeeds and abort otherwise."""
        reservation = self.reserve(keys, count, owner, excluded)
        try:
            yield reservation
        except BaseException:
            self.abort(reservation)
            raise
        self.commit(reservation)

    def _reserve_locked(
        self, keys: Iterable[str], count: int, owner: Owner, excluded: Iterable[int]
    ) -> AllocationRecord:
        keys = list(keys)
        if not keys:
            raise PluginError(PluginErrorType.PARAMETER_ERROR, "No allocation keys given")
        if count < 0:
            raise PluginError(PluginErrorType.PARAMETER_ERROR, f"Invalid unit count {count}")
        with self._index_lock:
            leftover = self._pending.get(owner.key)
        if leftover is not None:
            self._abort_locked(leftover)

        excluded = set(excluded)
        existing = self.lookup(owner.key)
        if existing is not None and existing.key in keys:
            keys = [existing.key] + [k for k in keys if k != existing.key]
        last_error = None
        for key in keys:
            try:
                return self._reserve_on(key, count, owner, existing, excluded)
            except PortExhaustedError as e:
                logger.debug(f"[{self.name}] {key} cannot serve {owner.key}: {e.message}")
                last_error = e
        raise last_error

    def _reserve_on(
        self,
        key: str,
        count: int,
        owner: Owner,
        existing: AllocationRecord | None,
        excluded: set[int],
    ) -> AllocationRecord:
        with self._key_lock(key):
            state = self._used.setdefault(key, {})
            kept = sorted(existing.units)[:count] if existing and existing.key == key else []
            need = count - len(kept)
            free = [u for u in self._pool if u not in state and u not in excluded]
            if len(free) < need:
                raise PortExhaustedError(key, count, len(kept) + len(free))
            units = tuple(sorted(kept + free[:need]))
            reservation = AllocationRecord(
                key, units, owner, self._clock(), _retired(existing, owner)
            )
            for unit in free[:need]:
                state[unit] = reservation
            with self._index_lock:
                self._pending[owner.key] = reservation
            return reservation

    def _commit_locked(self, reservation: AllocationRecord) -> list[int]:
        owner = reservation.owner
        with self._index_lock:
            if self._pending.get(owner.key) is reservation:
                del self._pending[owner.key]
        existing = self.lookup(owner.key)
        if (
            existing is not None
            and existing.key == reservation.key
            and existing.units == reservation.units
            and existing.owner == owner
        ):
            return list(existing.units)

        if existing is not None:
            keep = set(reservation.units) if existing.key == reservation.key else set()
            dropped = []
            with self._key_lock(existing.key):
                state = self._used.get(existing.key, {})
                for unit in existing.units:
                    holder = state.get(unit)
                    if unit in keep or holder is None or holder.owner.key != owner.key:
                        continue
                    del state[unit]
                    dropped.append(unit)
                self._drop_record(existing)
            if dropped:
                logger.info(f"[{self.name}] Released {dropped} of {owner.key} on {existing.key}")

        with self._key_lock(reservation.key):
            state = self._used.setdefault(reservation.key, {})
            units = []
            for unit in reservation.units:
                holder = state.get(unit)
                if holder is not None and holder.owner.key != owner.key:
                    logger.warning(
                        f"[{self.name}] {unit} on {reservation.key} reserved by {owner.key} "
                        f"is held by {holder.owner.key}"
                    )
                    continue
                units.append(unit)
            if units:
                self._set_record(state, replace(reservation, units=tuple(units)))
        logger.debug(f"[{self.name}] {owner.key} holds {units} on {reservation.key}")
        return units

    def _abort_locked(self, reservation: AllocationRecord) -> list[int]:
        owner = reservation.owner
        with self._index_lock:
            if self._pending.get(owner.key) is reservation:
                del self._pending[owner.key]
        released = []
        with self._key_lock(reservation.key):
            state = self._used.get(reservation.key, {})
            for unit in reservation.units:
                if state.get(unit) is reservation:
                    del state[unit]
                    released.append(unit)
        if released:
            logger.info(
                f"[{self.name}] Dropped reservation {released} of {owner.key} on {reservation.key}"
            )
        return released

    def _allocate_locked(
        self, key: str, count: int, owner: Owner, excluded: Iterable[int]
    ) -> list[int]:
        if count < 0:
            raise PluginError(PluginErrorType.PARAMETER_ERROR, f"Invalid unit count {count}")
        excluded = set(excluded)
        with self._key_lock(key):
            state = self._used.setdefault(key, {})
            existing = self.lookup(owner.key)
            if existing is not None and existing.key != key:
                raise PluginError(
                    PluginErrorType.INTERNAL_ERROR,
                    f"{owner.key} already holds units under {existing.key}, not {key}",
                )

            held = sorted(existing.units) if existing else []
            if len(held) > count:
                surplus = held[count:]
                held = held[:count]
                for unit in surplus:
                    state.pop(unit, None)
                logger.info(f"[{self.name}] Released surplus {surplus} of {owner.key} on {key}")
            elif len(held) < count:
                need = count - len(held)
                free = [u for u in self._pool if u not in state and u not in excluded]
                if len(free) < need:
                    raise PortExhaustedError(key, count, len(held) + len(free))
                held = sorted(held + free[:need])

            if existing is not None and not held:
                self._drop_record(existing)
                return []
            if existing is not None and tuple(held) == existing.units and existing.owner == owner:
                return held

            record = AllocationRecord(
                key, tuple(held), owner, self._clock(), _retired(existing, owner)
            )
            if held:
                self._set_record(state, record)
                logger.debug(f"[{self.name}] {owner.key} holds {held} on {key}")
            return held

    def release(
        self, key: str, units: Iterable[int], owner: Owner, force: bool = False
    ) -> list[int]:
        """Release units under ``key``.

        Free units are skipped. Units attributed to another pod identity are
        skipped too unless ``force`` is set, so a late release from a previous
        incarnation of a pod never frees units of the current one.

        Returns:
            The units actually released
        """
        with self._owner_guard(owner.key):
            return self._release_locked(key, units, owner, force)

    def release_owner(self, owner: Owner, force: bool = False) -> list[int]:
        """Release everything ``owner`` holds, a pending reservation included."""
        with self._owner_guard(owner.key):
            released = []
            with self._index_lock:
                pending = self._pending.get(owner.key)
            if pending is not None and (force or _owned_by(pending, owner)):
                released.extend(self._abort_locked(pending))
            record = self.lookup(owner.key)
            if record is not None:
                released.extend(self._release_locked(record.key, record.units, owner, force))
            return released

    def _release_locked(
        self, key: str, units: Iterable[int], owner: Owner, force: bool
    ) -> list[int]:
        released = []
        touched: dict[int, AllocationRecord] = {}
        with self._key_lock(key):
            state = self._used.get(key, {})
            for unit in units:
                record = state.get(unit)
                if record is None:
                    continue
                if not force and not _owned_by(record, owner):
                    logger.debug(
                        f"[{self.name}] Skip releasing {unit} on {key}: held by "
                        f"{record.owner.key}/{record.owner.uid}, not {owner.key}/{owner.uid}"
                    )
                    continue
                del state[unit]
                released.append(unit)
                touched[id(record)] = record

            gone = set(released)
            for record in touched.values():
                remaining = tuple(u for u in record.units if u not in gone)
                if remaining:
                    self._set_record(state, replace(record, units=remaining))
                else:
                    self._drop_record(record)

        if released:
            logger.info(f"[{self.name}] Released {sorted(released)} on {key} from {owner.key}")
        return released

    def claim(self, key: str, units: Iterable[int], owner: Owner) -> list[int]:
        """Record units observed in use by ``owner`` under ``key``.

        The observed units become the owner's whole holding under ``key``.
        Units outside the pool are ignored.

        Returns:
            Observed units that are attributed to another pod
        """
        with self._owner_guard(owner.key):
            with self._key_lock(key):
                state = self._used.setdefault(key, {})
                existing = self.lookup(owner.key)
                if existing is not None and existing.key != key:
                    raise PluginError(
                        PluginErrorType.INTERNAL_ERROR,
                        f"{owner.key} already holds units under {existing.key}, not {key}",
                    )

                conflicts = []
                observed = []
                for unit in sorted(set(units)):
                    if unit not in self._pool_set:
                        continue
                    holder = state.get(unit)
                    if holder is not None and holder.owner.key != owner.key:
                        conflicts.append(unit)
                    else:
                        observed.append(unit)

                if existing is not None:
                    if tuple(observed) == existing.units and existing.owner == owner:
                        return conflicts
                    for unit in existing.units:
                        if unit not in observed:
                            state.pop(unit, None)
                    if not observed:
                        self._drop_record(existing)

                if observed:
                    uid = owner.uid or (existing.owner.uid if existing else "")
                    holder = Owner(owner.key, uid)
                    record = AllocationRecord(
                        key, tuple(observed), holder, self._clock(), _retired(existing, holder)
                    )
                    self._set_record(state, record)

        if conflicts:
            logger.warning(
                f"[{self.name}] {owner.key} uses {conflicts} on {key} held by other pods"
            )
        return conflicts

    def reconcile(
        self,
        key: str,
        observed: Iterable[tuple[Owner, Iterable[int]]],
        grace: float | None = None,
    ) -> None:
        """Rebuild the state of ``key`` from authoritative observations.

        Records absent from ``observed`` are dropped unless they are younger than
        the grace period, in which case their pod may still be in admission.
        Owners moved here from another key lose their old holding.
        """
        grace = self.grace_period if grace is None else grace
        now = self._clock()
        displaced = []

        with self._key_lock(key):
            old_state = self._used.get(key, {})
            new_state: dict[int, AllocationRecord] = {}
            new_records: dict[str, AllocationRecord] = {}

            for owner, units in observed:
                valid = []
                for unit in sorted(set(units)):
                    if unit not in self._pool_set:
                        continue
                    if unit in new_state:
                        logger.warning(
                            f"[{self.name}] {unit} on {key} used by both "
                            f"{new_state[unit].owner.key} and {owner.key}"
                        )
                        continue
                    valid.append(unit)
                if not valid:
                    continue
                previous = new_records.get(owner.key)
                if previous is not None:
                    valid = sorted(set(valid) | set(previous.units))
                record = AllocationRecord(
                    key, tuple(valid), owner, now, _retired(self.lookup(owner.key), owner)
                )
                for unit in valid:
                    new_state[unit] = record
                new_records[owner.key] = record

            with self._index_lock:
                pending = [r for r in self._pending.values() if r.key == key]
            for reservation in pending:
                for unit in reservation.units:
                    if old_state.get(unit) is reservation and unit not in new_state:
                        new_state[unit] = reservation

            reserved = {id(r) for r in pending}
            old_records = {id(r): r for r in old_state.values()}
            for record in old_records.values():
                if record.owner.key in new_records or id(record) in reserved:
                    continue
                fresh = now - record.allocated_at < grace
                if fresh and not any(u in new_state for u in record.units):
                    for unit in record.units:
                        new_state[unit] = record
                    logger.debug(f"[{self.name}] Keeping in-flight {record.owner.key} on {key}")
                else:
                    self._drop_record(record)
                    logger.info(
                        f"[{self.name}] Dropped {list(record.units)} of {record.owner.key} on {key}"
                    )

            with self._index_lock:
                for owner_key, record in new_records.items():
                    prev = self._records.get(owner_key)
                    if prev is not None and prev.key != key:
                        displaced.append(prev)
                    self._records[owner_key] = record
                self._used[key] = new_state

        for prev in displaced:
            with self._key_lock(prev.key):
                state = self._used.get(prev.key, {})
                for unit in prev.units:
                    if state.get(unit) is prev:
                        del state[unit]
            logger.info(f"[{self.name}] Moved {prev.owner.key} from {prev.key} to {key}")


def _owned_by(record: AllocationRecord, owner: Owner) -> bool:
    if record.owner.key != owner.key:
        return False
    if owner.uid and owner.uid in record.retired_uids:
        return False
    return not record.owner.uid or record.owner.uid == owner.uid


def _retired(existing: AllocationRecord | None, owner: Owner) -> frozenset[str]:
    """uids of incarnations replaced when ``owner`` takes over ``existing``."""
    if existing is None or existing.owner.key != owner.key:
        return frozenset()
    retired = set(existing.retired_uids)
    if existing.owner.uid and existing.owner.uid != owner.uid:
        retired.add(existing.owner.uid)
    retired.discard(owner.uid)
    return frozenset(retired)
