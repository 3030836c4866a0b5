"""URL helpers."""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def add_query_params(url: str, params: dict[str, str | None]) -> str:
    """Append params to url, keeping its existing query. None values are skipped."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def is_http_url(value: str | None) -> bool:
    """True for absolute http(s) URLs, the only kind rendered as links."""
    if not value:
        return False
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)
