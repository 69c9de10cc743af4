import pytest

from app.services.optimistic import run_optimistic


@pytest.mark.asyncio
async def test_success_keeps_applied_state() -> None:
    state = {"value": 1}
    restored: list[int] = []

    async def remote() -> str:
        return "ok"

    outcome = await run_optimistic(
        label="bump",
        snapshot=lambda: state["value"],
        apply=lambda: state.update(value=2),
        remote=remote,
        restore=restored.append,
    )

    assert outcome.ok is True
    assert outcome.result == "ok"
    assert state["value"] == 2
    assert restored == []


@pytest.mark.asyncio
async def test_failure_restores_snapshot() -> None:
    state = {"value": 1}

    async def remote() -> None:
        raise ConnectionError("offline")

    outcome = await run_optimistic(
        label="bump",
        snapshot=lambda: state["value"],
        apply=lambda: state.update(value=2),
        remote=remote,
        restore=lambda saved: state.update(value=saved),
    )

    assert outcome.ok is False
    assert isinstance(outcome.error, ConnectionError)
    assert state["value"] == 1


@pytest.mark.asyncio
async def test_async_restore_is_awaited() -> None:
    calls: list[str] = []

    async def remote() -> None:
        raise RuntimeError("boom")

    async def restore(_: None) -> None:
        calls.append("restored")

    await run_optimistic(label="noop", snapshot=lambda: None, apply=lambda: None, remote=remote, restore=restore)

    assert calls == ["restored"]
