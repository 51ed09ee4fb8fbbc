"""Error taxonomy for the pricing extraction pipeline.

Input errors (InvalidURL) are raised before any network call. Upstream
errors (FetchError, BrowserRenderError, LLMError) describe a failed
collaborator. ExtractionFailed is raised by the LLM adapter and carries
the warning codes the orchestrator folds into the result.
"""


class PricingError(Exception):
    """Base class for all pipeline errors."""


class InvalidURL(PricingError):
    """User-supplied URL is malformed or targets a forbidden host."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class FetchError(PricingError):
    """Static page fetch failed (timeout, non-200, transport error)."""


class BrowserRenderError(PricingError):
    """Headless browser could not load the page or hit its deadline."""


class LLMError(PricingError):
    """The completion service failed or returned an unusable response."""


class ExtractionFailed(PricingError):
    """The model reply could not be turned into plan records."""

    def __init__(self, message, warnings=None):
        super().__init__(message)
        self.warnings = list(warnings or [])
