from fastapi import HTTPException

from mathduel.app.core.exceptions import (
    EngineError,
    InputLockedError,
    InvalidStateError,
    NotFoundError,
    OracleUnavailableError,
    RaceLostError,
    CorruptStateError,
)


def to_http(error: EngineError) -> HTTPException:
    """Maps engine errors onto the status codes the clients expect."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InputLockedError):
        detail = {"message": str(error)}
        if error.locked_until is not None:
            detail["locked_until"] = error.locked_until.isoformat()
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, (InvalidStateError, RaceLostError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, OracleUnavailableError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, CorruptStateError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
