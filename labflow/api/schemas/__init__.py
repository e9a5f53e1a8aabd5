from labflow.api.schemas.common import CamelModel, ActionResult, ErrorResponse

__all__ = ["CamelModel", "ActionResult", "ErrorResponse"]
