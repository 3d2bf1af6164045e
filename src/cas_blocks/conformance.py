"""Model-based conformance tests for block store implementations.

Any backend is correct if it passes :func:`check_store`. The harness drives a
store through random sequences of put/get/stat/list/delete calls while
applying the same calls to a reference model (a dict), and compares every
result with what the model predicts. A final stage races several threads
against the store to catch non-atomic puts and deletes.

Usage from a test module:

    def test_my_store(tmp_path):
        store = MyStore(tmp_path)
        check_store(store, eraser=MyStore.erase, max_size=1024, blocks=10)

Failures raise ConformanceError, which carries the random seed and the
operation history so the run can be reproduced.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .content import StreamContent
from .core import erase_store
from .data import Block, read_block, wrap_content
from .hashing import Multihash
from .store.base import BlockStore, ListOptions

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHMS = ("sha1", "sha2-256")

# Share of generated blocks whose content is read through a stream factory
LAZY_RATIO = 0.3

# Relative weights of each operation in a random sequence
OPERATION_WEIGHTS = {
    "put": 4,
    "get": 3,
    "stat": 2,
    "list": 1,
    "delete": 2,
}


class ConformanceError(AssertionError):
    """A store returned a result the reference model did not predict."""

    def __init__(self, message: str, seed: Optional[int] = None, history: Sequence[str] = ()):
        self.seed = seed
        self.history = list(history)
        lines = [message]
        if seed is not None:
            lines.append(f"seed: {seed}")
        if self.history:
            lines.append("operations:")
            lines.extend(f"  {i}: {op}" for i, op in enumerate(self.history))
        super().__init__("\n".join(lines))


@dataclass
class ModelEntry:
    """What the model knows about a stored block."""

    size: int
    stored_at: object
    data: bytes


Model = Dict[Multihash, ModelEntry]


def _fail(message: str) -> None:
    raise ConformanceError(message)


def _read(block: Block, start=None, end=None) -> bytes:
    with block.open(start, end) as stream:
        return stream.read()


# ---- Block generation --------------------------------------------------------

def generate_blocks(
    rng: random.Random,
    count: int,
    max_size: int,
    algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
    lazy_ratio: float = LAZY_RATIO,
) -> List[Block]:
    """Generate ``count`` distinct blocks with random content.

    About ``lazy_ratio`` of them read their content through a
    ``StreamContent`` factory instead of holding it as ``ByteContent``, so
    stores are exercised with both kinds of block.
    """
    blocks: Dict[Multihash, Block] = {}
    while len(blocks) < count:
        data = rng.randbytes(rng.randint(1, max_size))
        block = read_block(rng.choice(list(algorithms)), data)
        if rng.random() < lazy_ratio:
            block = wrap_content(block, lambda content: StreamContent(content.read_all))
        blocks[block.id] = block
    return list(blocks.values())


# ---- Operations -------------------------------------------------------------

class Operation:
    """One store call plus the model's prediction of its result."""

    def apply(self, store: BlockStore):
        raise NotImplementedError

    def check(self, model: Model, result) -> None:
        raise NotImplementedError

    def update(self, model: Model, result) -> None:
        pass


@dataclass
class PutBlock(Operation):
    block: Block

    def apply(self, store):
        return store.put(self.block)

    def check(self, model, result):
        if result is None:
            _fail(f"put returned None for {self.block!r}")
        if result.id != self.block.id or result.size != self.block.size:
            _fail(f"put returned {result!r} for {self.block!r}")
        entry = model.get(self.block.id)
        if entry is not None and result.stored_at != entry.stored_at:
            _fail(
                f"put of existing block changed stored_at from "
                f"{entry.stored_at} to {result.stored_at}"
            )
        if _read(result) != _read(self.block):
            _fail(f"put returned block {result!r} with different content")

    def update(self, model, result):
        if self.block.id not in model:
            model[self.block.id] = ModelEntry(result.size, result.stored_at, _read(self.block))

    def __repr__(self):
        return f"put({self.block.id} {self.block.size})"


@dataclass
class GetBlock(Operation):
    id: object
    start: Optional[int] = None
    end: Optional[int] = None

    def apply(self, store):
        return store.get(self.id)

    def check(self, model, result):
        entry = model.get(self.id) if isinstance(self.id, Multihash) else None
        if entry is None:
            if result is not None:
                _fail(f"get({self.id}) returned {result!r} for an absent block")
            return
        if result is None:
            _fail(f"get({self.id}) returned None for a stored block")
        if result.id != self.id or result.size != entry.size:
            _fail(f"get({self.id}) returned {result!r}, expected size {entry.size}")
        if result.stored_at != entry.stored_at:
            _fail(f"get({self.id}) returned stored_at {result.stored_at}, expected {entry.stored_at}")
        # Content readers must be repeatable
        for _ in range(2):
            if _read(result) != entry.data:
                _fail(f"get({self.id}) content does not match what was put")
        if self.start is not None or self.end is not None:
            stop = None if self.end is None else self.end + 1
            expected = entry.data[self.start or 0:stop]
            if _read(result, self.start, self.end) != expected:
                _fail(f"get({self.id}) range [{self.start}, {self.end}] returned wrong bytes")

    def __repr__(self):
        return f"get({self.id}, range=[{self.start}, {self.end}])"


@dataclass
class StatBlock(Operation):
    id: object

    def apply(self, store):
        return store.stat(self.id)

    def check(self, model, result):
        entry = model.get(self.id) if isinstance(self.id, Multihash) else None
        if entry is None:
            if result is not None:
                _fail(f"stat({self.id}) returned {result!r} for an absent block")
            return
        if result is None:
            _fail(f"stat({self.id}) returned None for a stored block")
        if (result.id, result.size, result.stored_at) != (self.id, entry.size, entry.stored_at):
            _fail(
                f"stat({self.id}) returned {result!r}, expected "
                f"size {entry.size} stored_at {entry.stored_at}"
            )

    def __repr__(self):
        return f"stat({self.id})"


def _model_list(model: Model, options: ListOptions) -> List[Multihash]:
    """Apply list options to the model, independently of select_ids."""
    ids = []
    for id in sorted(model, key=lambda i: i.hex):
        h = id.hex
        if options.after is not None and not h > options.after:
            continue
        if options.before is not None and not h < options.before:
            continue
        if options.prefix is not None and not h.startswith(options.prefix):
            continue
        if options.algorithm is not None and id.algorithm != options.algorithm:
            continue
        ids.append(id)
    if options.limit is not None:
        ids = ids[:options.limit]
    return ids


@dataclass
class ListBlocks(Operation):
    options: ListOptions = field(default_factory=ListOptions)

    def apply(self, store):
        return list(store.list(self.options))

    def check(self, model, result):
        expected = _model_list(model, self.options)
        actual = [b.id for b in result]
        if actual != expected:
            _fail(f"list returned {[str(i) for i in actual]}, expected {[str(i) for i in expected]}")
        for block in result:
            entry = model[block.id]
            if block.size != entry.size or block.stored_at != entry.stored_at:
                _fail(f"list entry {block!r} does not match stored size/stored_at")
            if block.content is not None:
                _fail(f"list entry {block!r} carries content")

    def __repr__(self):
        return f"list({self.options.model_dump(exclude_none=True)})"


@dataclass
class DeleteBlock(Operation):
    id: object

    def apply(self, store):
        return store.delete(self.id)

    def check(self, model, result):
        expected = isinstance(self.id, Multihash) and self.id in model
        if result is not expected:
            _fail(f"delete({self.id}) returned {result!r}, expected {expected}")

    def update(self, model, result):
        if isinstance(self.id, Multihash):
            model.pop(self.id, None)

    def __repr__(self):
        return f"delete({self.id})"


# ---- Operation generation ----------------------------------------------------

def _random_id(rng: random.Random, blocks: Sequence[Block], unknown: Sequence[Multihash]):
    roll = rng.random()
    if roll < 0.05:
        return "not-a-block-id"
    if roll < 0.15:
        return rng.choice(unknown)
    return rng.choice(blocks).id


def _random_list_options(rng: random.Random, blocks: Sequence[Block]) -> ListOptions:
    kwargs = {}
    hexes = [b.id.hex for b in blocks]
    if rng.random() < 0.3:
        kwargs["limit"] = rng.randint(1, max(1, len(blocks)))
    if rng.random() < 0.2:
        kwargs["algorithm"] = rng.choice(DEFAULT_ALGORITHMS)
    roll = rng.random()
    if roll < 0.2:
        h = rng.choice(hexes)
        kwargs["prefix"] = h[:rng.randint(1, 8)]
    elif roll < 0.4:
        kwargs["after"] = rng.choice(hexes)
    elif roll < 0.6:
        kwargs["before"] = rng.choice(hexes)
    return ListOptions(**kwargs)


def generate_operations(
    rng: random.Random,
    blocks: Sequence[Block],
    count: int,
) -> List[Operation]:
    """Generate a random operation sequence over a pool of blocks."""
    unknown = [b.id for b in generate_blocks(rng, 2, 16)]
    names = list(OPERATION_WEIGHTS)
    weights = [OPERATION_WEIGHTS[n] for n in names]
    ops: List[Operation] = []
    for _ in range(count):
        name = rng.choices(names, weights)[0]
        if name == "put":
            ops.append(PutBlock(rng.choice(blocks)))
        elif name == "get":
            id = _random_id(rng, blocks, unknown)
            start = end = None
            if rng.random() < 0.5:
                start = rng.choice([None, rng.randint(0, 32)])
                end = rng.choice([None, (start or 0) + rng.randint(0, 64)])
            ops.append(GetBlock(id, start, end))
        elif name == "stat":
            ops.append(StatBlock(_random_id(rng, blocks, unknown)))
        elif name == "list":
            ops.append(ListBlocks(_random_list_options(rng, blocks)))
        else:
            ops.append(DeleteBlock(_random_id(rng, blocks, unknown)))
    return ops


# ---- Runners ----------------------------------------------------------------

def run_operations(store: BlockStore, operations: Sequence[Operation], seed: Optional[int] = None) -> Model:
    """Apply operations to an empty store and the model, checking each result.

    Returns:
        The final model

    Raises:
        ConformanceError: On the first result that disagrees with the model
    """
    model: Model = {}
    history: List[str] = []
    leftover = [b.id for b in store.list()]
    if leftover:
        raise ConformanceError(f"Store is not empty before scenario: {len(leftover)} blocks", seed)
    for op in operations:
        history.append(repr(op))
        try:
            result = op.apply(store)
            op.check(model, result)
        except ConformanceError as e:
            raise ConformanceError(str(e).splitlines()[0], seed, history) from None
        except Exception as e:
            raise ConformanceError(f"{type(e).__name__}: {e}", seed, history) from e
        op.update(model, result)
    # The whole model must be visible at the end
    try:
        ListBlocks().check(model, list(store.list()))
    except ConformanceError as e:
        raise ConformanceError(str(e).splitlines()[0], seed, history) from None
    return model


def run_scenario(
    store: BlockStore,
    rng: random.Random,
    max_size: int = 1024,
    blocks: int = 10,
    operations: int = 50,
    seed: Optional[int] = None,
) -> Model:
    """Run one random operation sequence against an empty store."""
    pool = generate_blocks(rng, blocks, max_size)
    ops = generate_operations(rng, pool, operations)
    return run_operations(store, ops, seed)


def _run_actors(actors: int, target: Callable[[int], object]) -> List[object]:
    """Run ``target(actor_index)`` on several threads started together."""
    barrier = threading.Barrier(actors)
    results: List[object] = [None] * actors
    errors: List[BaseException] = []

    def run(i):
        try:
            barrier.wait()
            results[i] = target(i)
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(actors)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if errors:
        raise errors[0]
    return results


def run_concurrent(
    store: BlockStore,
    rng: random.Random,
    max_size: int = 1024,
    blocks: int = 10,
    actors: int = 4,
    seed: Optional[int] = None,
) -> None:
    """Race several threads putting then deleting the same blocks.

    Checks that every actor sees the same stored block for each id, that the
    store agrees with them, and that each id is deleted by exactly one actor.
    """
    pool = generate_blocks(rng, blocks, max_size)
    orders = []
    for _ in range(actors):
        order = list(pool)
        rng.shuffle(order)
        orders.append(order)

    def put_all(i):
        return {b.id: store.put(b) for b in orders[i]}

    try:
        put_results = _run_actors(actors, put_all)
    except Exception as e:
        raise ConformanceError(f"Concurrent put failed: {type(e).__name__}: {e}", seed) from e

    for block in pool:
        seen = {r[block.id].stored_at for r in put_results}
        if len(seen) != 1:
            raise ConformanceError(
                f"Concurrent puts of {block.id} returned {len(seen)} different stored_at values", seed
            )
        stats = store.stat(block.id)
        if stats is None or stats.stored_at not in seen or stats.size != block.size:
            raise ConformanceError(f"Store disagrees with concurrent put results for {block.id}: {stats!r}", seed)

    doomed = rng.sample(pool, k=len(pool) // 2)

    def delete_all(i):
        order = list(doomed)
        random.Random(i).shuffle(order)
        return {b.id: store.delete(b.id) for b in order}

    try:
        delete_results = _run_actors(actors, delete_all)
    except Exception as e:
        raise ConformanceError(f"Concurrent delete failed: {type(e).__name__}: {e}", seed) from e

    for block in doomed:
        winners = sum(1 for r in delete_results if r[block.id])
        if winners != 1:
            raise ConformanceError(f"{winners} actors reported deleting {block.id}", seed)

    expected = sorted(b.id for b in pool if b not in doomed)
    actual = [b.id for b in store.list()]
    if actual != expected:
        raise ConformanceError(
            f"Store lists {len(actual)} blocks after concurrent deletes, expected {len(expected)}", seed
        )


@dataclass
class ConformanceReport:
    """Summary of a passing conformance run."""

    seed: int
    scenarios: int
    operations: int


def check_store(
    store: BlockStore,
    *,
    eraser: Optional[Callable[[BlockStore], None]] = None,
    max_size: int = 1024,
    blocks: int = 10,
    operations: int = 50,
    scenarios: int = 3,
    actors: int = 4,
    seed: Optional[int] = None,
) -> ConformanceReport:
    """Check a store implementation against the reference model.

    Args:
        store: Store under test
        eraser: Out-of-band cleanup run before each scenario (defaults to
            deleting every listed block)
        max_size: Maximum generated block size in bytes
        blocks: Number of distinct blocks per scenario
        operations: Operations per scenario
        scenarios: Number of random sequential scenarios
        actors: Threads racing in the concurrent stage (skipped if below 2)
        seed: Random seed; a fresh one is chosen and logged when omitted

    Raises:
        ConformanceError: If the store disagrees with the model
    """
    if seed is None:
        seed = random.randrange(2 ** 32)
    logger.info("Checking %r with seed %d", store, seed)
    rng = random.Random(seed)
    eraser = eraser or erase_store

    for i in range(scenarios):
        eraser(store)
        run_scenario(store, rng, max_size=max_size, blocks=blocks, operations=operations, seed=seed)
        logger.debug("Scenario %d passed", i)

    if actors > 1:
        eraser(store)
        run_concurrent(store, rng, max_size=max_size, blocks=blocks, actors=actors, seed=seed)

    eraser(store)
    return ConformanceReport(seed=seed, scenarios=scenarios, operations=scenarios * operations)
