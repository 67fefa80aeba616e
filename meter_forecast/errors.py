"""Pipeline error taxonomy.

Every error carries the name of the stage that raised it so a failed batch
run can be traced back to the file, column or setting at fault.
"""


class PipelineError(ValueError):
    """Base class for input and configuration failures."""

    def __init__(self, stage, detail):
        self.stage = stage
        self.detail = detail
        super().__init__(f"[{stage}] {detail}")


class InputDataError(PipelineError):
    """Source data is malformed: missing columns, unmatched or duplicated keys."""


class ConfigurationError(PipelineError):
    """A caller-supplied setting does not fit the data it is applied to."""
