class JobError(Exception):
    """Base class for every error raised by metadata jobs"""


class SubmissionError(JobError):
    """The gateway rejected or failed the initial operation request"""


class PollError(JobError):
    """A single status poll failed in transport"""


class JobStateError(JobError):
    """An operation was issued in a run state that does not allow it"""


class PayloadUnavailableError(JobError):
    """No terminal snapshot carrying an archive payload exists"""


class ArchiveDecodeError(JobError):
    """The result payload is not valid base64"""


class ExtractionError(JobError):
    """The archive could not be unpacked to its destination"""
