def redact_token(token: str | None) -> str:
    """
    Redact a user id or key for logging purposes.
    Shows the first 6 characters followed by ***.
    """
    if not token:
        return "anonymous"
    if len(token) <= 6:
        return token
    return f"{token[:6]}***"
