import re


def normalize_path(path: str) -> str:
    """Normalize a request path into its route bucket form.

    Query strings and fragments are dropped, repeated slashes collapse into
    one and the trailing slash is removed (the root stays ``/``). As a result
    ``/hello``, ``/hello/`` and ``/hello?name=x`` all land in the same bucket.
    Case is preserved.

    Args:
        path: Raw request path, possibly with query string.

    Returns:
        str: Normalized path, always starting with ``/``.
    """
    path = path.split("?", 1)[0].split("#", 1)[0]
    path = re.sub(r"/{2,}", "/", path.strip())
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path
