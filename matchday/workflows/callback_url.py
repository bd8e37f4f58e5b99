"""Resolution of the callback URL handed to the engine."""

from __future__ import annotations

from matchday.settings import Settings, get_settings

CALLBACK_PATH = "/api/workflows/callback"


def resolve_callback_url(settings: Settings | None = None, *, request_host: str | None = None) -> str:
    """Pick the URL the engine should post step callbacks to.

    Precedence: explicit override, then the detected public host (the
    incoming request's host, else the first configured public domain),
    then the fixed fallback.
    """
    settings = settings or get_settings()
    if settings.callback_url_override:
        return settings.callback_url_override

    host = request_host or next(
        (d.strip() for d in settings.public_domains.split(",") if d.strip()),
        None,
    )
    if host:
        host = host.removeprefix("https://").removeprefix("http://").rstrip("/")
        return f"https://{host}{CALLBACK_PATH}"

    return settings.callback_fallback_url
