from fastapi import HTTPException

from aircrm_api.services.loyalty.errors import LoyaltyError


def loyalty_http_error(error: LoyaltyError) -> HTTPException:
    """Translate a domain error into the JSON error envelope."""

    return HTTPException(status_code=error.status_code, detail=error.as_detail())
