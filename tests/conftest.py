import asyncio

import pytest

from linguaverse.tutor.models import TurnState
from linguaverse.tutor.testing import create_mock_conversation_setup


async def settle(turns: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def begin_conversation(setup) -> None:
    """Start the controller and get through the opening line to the learner's turn."""
    controller = setup["controller"]
    player = setup["player"]
    await controller.start()
    if not player.auto_finish and not controller.muted:
        await player.wait_until_speaking()
        player.finish()
    await controller.wait_for_state(TurnState.USER_RECORDING)
    await wait_until(lambda: setup["capture"].is_active or bool(controller.notices))


@pytest.fixture
def setup():
    return create_mock_conversation_setup()


@pytest.fixture
def manual_setup():
    """Playback only ends when the test calls player.finish()."""
    return create_mock_conversation_setup(auto_finish=False)
