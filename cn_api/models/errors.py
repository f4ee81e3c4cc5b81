# ABOUTME: Error response examples for OpenAPI docs
# ABOUTME: Reusable {code, message, details} response fragments shared by route decorators


def _error_example(code: str, message: str, details: dict | None = None) -> dict:
    """Builds a single OpenAPI response entry with an error example."""
    example = {"code": code, "message": message}
    if details is not None:
        example["details"] = details
    return {"content": {"application/json": {"example": example}}}


# Reusable OpenAPI response fragments for route decorators
AUTH_REQUIRED = {
    401: {
        "description": "API key missing or invalid",
        **_error_example("INVALID_API_KEY", "Invalid or inactive API key"),
    }
}

RATE_LIMITED = {
    429: {
        "description": "Monthly call quota exhausted",
        **_error_example(
            "RATE_LIMITED",
            "Rate limit exceeded. You have used 1000 of 1000 calls this month.",
            {"usage": {"current": 1000, "limit": 1000, "remaining": 0, "percentUsed": 100.0}},
        ),
    }
}

METERED = {**AUTH_REQUIRED, **RATE_LIMITED}

ADMIN_REQUIRED = {
    **AUTH_REQUIRED,
    403: {
        "description": "Admin privileges required",
        **_error_example("FORBIDDEN", "Admin privileges required"),
    },
}

NOT_FOUND = {
    404: {
        "description": "Requested resource not found",
        **_error_example("NOT_FOUND", "Resource not found"),
    }
}
