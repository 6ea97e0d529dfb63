"""
errors.py
~~~~~~~~~
Exception taxonomy shared by the API, the queue adapters and the worker.
"""

class JobMasterError(Exception):
    """Base class for every error raised by the job subsystem."""


# ─── Front door ──────────────────────────────────────────────────────────────
class ValidationError(JobMasterError): pass
class NotFoundError(JobMasterError): pass
class QueueUnavailableError(JobMasterError): pass

# ─── Worker ──────────────────────────────────────────────────────────────────
class UpstreamUnavailableError(JobMasterError): pass
class EmptyPortfolioError(JobMasterError): pass
class NoSuccessfulEstimationsError(JobMasterError): pass
