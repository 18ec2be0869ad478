class TexRepairError(Exception):
    """Base exception for all texrepair errors."""
    pass


class PipelineConfigurationError(TexRepairError):
    """Raised when a compilation run is misconfigured and cannot start."""
    pass


class CompilationError(TexRepairError):
    """Raised when a caller asks for a failed compilation outcome to be fatal."""

    def __init__(self, message: str, latex_code: str = "", error_log: str = ""):
        super().__init__(message)
        self.latex_code = latex_code
        self.error_log = error_log


class TextGenerationError(TexRepairError):
    """Raised when the text-generation service fails or returns nothing usable."""

    def __init__(self, message: str, model: str = ""):
        super().__init__(message)
        self.model = model
