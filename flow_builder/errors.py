# flow_builder/errors.py


class FlowError(Exception):
    pass


class ValidationError(FlowError):
    """Rejected input. Raised before any mutation and never reaches the network."""
    pass


class NotFoundError(FlowError):
    pass


class PersistenceError(FlowError):
    pass


class UploadError(FlowError):
    pass


class DeleteAttachmentError(FlowError):
    pass
