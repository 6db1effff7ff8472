class ProfilerError(Exception):
    pass


class InvalidInput(ProfilerError, ValueError):
    """Bad device selector, unrecognised artifact suffix or repetition count."""


class EngineFailure(ProfilerError):
    """compile/load/predict raised; the original exception is chained."""


class PlanUnavailable(ProfilerError):
    pass


class StructuralError(ProfilerError):
    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field


class DiagnosticsUnavailable(ProfilerError):
    pass


class ArtifactWriteError(ProfilerError):
    """compute_plan.json or the operation table could not be written."""
