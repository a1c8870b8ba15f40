class MicrobiomeWrapperError(Exception):
    """Base class for errors raised by microbiome_wrappers."""


class ConfigurationError(MicrobiomeWrapperError, ValueError):
    """Unknown analysis name, missing metadata column or invalid parameter."""


class DataError(MicrobiomeWrapperError, ValueError):
    """Problem with the supplied tables, e.g. duplicate or mismatched sample ids.

    Args:
        message (str): Description of the problem.
        sample_ids (list, optional): Samples responsible for the error.
    """

    def __init__(self, message: str, sample_ids=None):
        super().__init__(message)
        self.sample_ids = list(sample_ids) if sample_ids is not None else []


class AggregationError(MicrobiomeWrapperError, ValueError):
    """Replicate results could not be combined."""


class ReplicateError(MicrobiomeWrapperError):
    """A single rarefaction replicate failed.

    The arguments are kept in ``self.args`` so the exception survives
    pickling between worker processes.
    """

    def __init__(self, replicate_index: int, message: str):
        super().__init__(replicate_index, message)
        self.replicate_index = replicate_index
        self.message = message

    def __str__(self) -> str:
        return f"Replicate {self.replicate_index} failed: {self.message}"
