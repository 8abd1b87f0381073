import asyncio
import base64
import io
import zipfile
from typing import Dict, List, Optional, Union

import pytest
from metadata_job_client.errors import PollError
from metadata_job_client.models import StatusSnapshot


def zip_payload(files: Dict[str, bytes]) -> str:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def snapshot(state: str, payload=None) -> StatusSnapshot:
    done = state in ("Succeeded", "Failed")
    return StatusSnapshot.from_response(
        {"done": done, "state": state, "payload": payload}, elapsed_time=0.01
    )


class ScriptedGateway:
    """In-memory gateway answering polls from a fixed script"""

    def __init__(
        self,
        responses: List[Union[StatusSnapshot, Exception]],
        job_id: str = "700x1",
    ):
        self.responses = list(responses)
        self.job_id = job_id
        self.submissions = []
        self.polls = 0
        self.submit_error: Optional[Exception] = None

    async def submit(self, operation, params):
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((operation, params))
        return self.job_id

    async def poll(self, job_id):
        assert job_id == self.job_id
        self.polls += 1
        if len(self.responses) > 1:
            response = self.responses.pop(0)
        else:
            response = self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def transient() -> PollError:
    return PollError("connection reset")
