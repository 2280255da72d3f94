import asyncio

import pytest

from sidecar.errors import DetectionTimeout
from sidecar.race.settle import BranchDeclined, SettleCell, first_wins


@pytest.mark.asyncio
async def test_settle_cell_accepts_only_the_first_offer():
    cell = SettleCell()

    assert cell.resolve("first", by="network")
    assert not cell.resolve("second", by="structural")
    assert not cell.reject(RuntimeError("late"), by="timeout")

    assert await cell.wait() == "first"
    assert cell.settled_by == "network"


@pytest.mark.asyncio
async def test_first_result_wins_and_losers_are_torn_down():
    loser_cancelled = asyncio.Event()

    async def fast():
        await asyncio.sleep(0)
        return "fast"

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            loser_cancelled.set()
            raise
        return "slow"

    result = await first_wins({"fast": fast, "slow": slow}, label="test")

    assert result.value == "fast"
    assert result.winner == "fast"
    assert result.elapsed_ms >= 0
    # Losers are cancelled before the winner's continuation runs.
    assert loser_cancelled.is_set()


@pytest.mark.asyncio
async def test_branch_error_settles_race_and_is_tagged():
    async def failing():
        raise DetectionTimeout("marker never appeared")

    async def slow():
        await asyncio.sleep(10)

    with pytest.raises(DetectionTimeout) as excinfo:
        await first_wins({"observer": failing, "polling": slow})

    assert excinfo.value.strategy == "observer"
    assert excinfo.value.elapsed_ms is not None


@pytest.mark.asyncio
async def test_declined_branch_leaves_the_race_to_others():
    async def decline():
        raise BranchDeclined("gave up")

    async def late():
        await asyncio.sleep(0.01)
        return 42

    result = await first_wins({"polling": decline, "observer": late})

    assert result.value == 42
    assert result.winner == "observer"


@pytest.mark.asyncio
async def test_every_branch_declining_raises_exhausted_error():
    async def decline():
        raise BranchDeclined("gave up")

    with pytest.raises(DetectionTimeout):
        await first_wins(
            {"a": decline, "b": decline},
            exhausted=lambda: DetectionTimeout("nobody saw completion"),
        )

    with pytest.raises(RuntimeError, match="every branch declined"):
        await first_wins({"a": decline})


@pytest.mark.asyncio
async def test_first_wins_requires_branches():
    with pytest.raises(ValueError):
        await first_wins({})


@pytest.mark.asyncio
async def test_cancelling_the_race_does_not_settle_it_as_exhausted():
    exhausted_calls = []
    started = asyncio.Event()

    async def pending():
        started.set()
        await asyncio.sleep(10)

    race = asyncio.create_task(
        first_wins(
            {"network": pending, "explicit": pending},
            exhausted=lambda: exhausted_calls.append("called") or RuntimeError("exhausted"),
        )
    )
    await started.wait()
    race.cancel()

    with pytest.raises(asyncio.CancelledError):
        await race
    assert exhausted_calls == []
