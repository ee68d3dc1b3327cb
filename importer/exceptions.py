class ImageImportFailure(Exception):
    """
    Raised when an image import operation fails.

    This exception signals a failure while downloading a product image from a
    foreign host or storing it. Callers should include a concise
    human-readable reason in the exception message to aid in debugging and
    logging.
    """

    pass


class JobNotFound(Exception):
    """Raised when an import job id is unknown to the registry."""

    pass


class InvalidJobTransition(Exception):
    """
    Raised when a job is moved to a status its lifecycle does not allow.

    Jobs only ever move pending -> processing -> completed or failed.
    """

    pass


class RowValidationError(Exception):
    """
    Raised while processing an import row which can't be applied.

    ``fields`` maps the offending field names to messages and ends up in the
    job's error list.
    """

    def __init__(self, fields):
        super().__init__("; ".join(f"{k}: {v}" for k, v in fields.items()))
        self.fields = fields
