import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from metadata_job_client.models import StatusPollingConfig

Sleep = Callable[[float], Awaitable[None]]


class BackoffState(BaseModel):
    model_config = ConfigDict(frozen=True)

    initial_delay: float = Field(gt=0)
    multiplier: float = Field(gt=1)
    current_delay: float = Field(gt=0)
    max_delay: Optional[float] = None

    @classmethod
    def from_config(cls, config: StatusPollingConfig) -> "BackoffState":
        return cls(
            initial_delay=config.initial_delay,
            multiplier=config.backoff_factor,
            current_delay=config.initial_delay,
            max_delay=config.max_delay,
        )


def advance(state: BackoffState) -> BackoffState:
    """Returns the state whose current_delay is the next wait duration"""
    delay = state.current_delay * state.multiplier
    if state.max_delay is not None:
        delay = min(delay, state.max_delay)
    return state.model_copy(update={"current_delay": delay})


class BackoffScheduler:
    def __init__(self, state: BackoffState, sleep: Optional[Sleep] = None):
        self.state = state
        self.sleep = sleep or asyncio.sleep
        self.logger = logger

    def next_delay(self) -> float:
        self.state = advance(self.state)
        return self.state.current_delay

    async def wait(self) -> float:
        """Advances the backoff and sleeps for the new delay"""
        delay = self.next_delay()
        self.logger.debug(f"Waiting {delay:.2f}s before next poll")
        await self.sleep(delay)
        return delay
