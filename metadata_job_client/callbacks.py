import inspect
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List

if TYPE_CHECKING:
    from metadata_job_client.jobs import Job

Handler = Callable[["Job"], Any]


class EventKind(str, Enum):
    on_poll = "on_poll"
    on_complete = "on_complete"
    on_error = "on_error"


class CallbackRegistry:
    def __init__(self):
        self._handlers: Dict[EventKind, List[Handler]] = {
            kind: [] for kind in EventKind
        }

    def register(self, kind: EventKind, handler: Handler) -> None:
        self._handlers[EventKind(kind)].append(handler)

    def handlers(self, kind: EventKind) -> List[Handler]:
        return list(self._handlers[EventKind(kind)])

    async def fire(self, kind: EventKind, job: "Job") -> None:
        """Invoke the handlers registered for kind in registration order.

        Handlers registered while firing are not invoked for this occurrence.
        Exceptions raised by a handler propagate to the caller.
        """
        for handler in self.handlers(kind):
            result = handler(job)
            if inspect.isawaitable(result):
                await result
