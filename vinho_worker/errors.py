"""
Exception types raised by the label-resolution pipeline.

Anything raised out of a job is caught at the job boundary and routed
through the retry policy; these types only exist so callers and logs can
tell the failure classes apart.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ImageUrlRejectedError(PipelineError):
    """Image URL failed the SSRF allow-list check."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Image URL rejected by security policy: {url[:200]}")


class ExtractionParseError(PipelineError):
    """Model output could not be converted into ExtractedWineData."""


class LLMUnavailableError(PipelineError):
    """LiteLLM is not installed or not configured."""


class JobClaimError(PipelineError):
    """Claiming jobs from the queue failed."""
