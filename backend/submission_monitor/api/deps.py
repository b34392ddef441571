"""FastAPI dependencies shared by the routers."""

from fastapi import Request

from submission_monitor.services.engine import MonitoringEngine


def get_engine(request: Request) -> MonitoringEngine:
    """The engine built at startup (tests install their own on app.state)."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Monitoring engine not initialized")
    return engine


def client_ident(request: Request) -> str:
    """Client address for per-client rate limiting.

    X-Forwarded-For is only read when ``trusted_proxy_hops`` proxies sit in
    front of the service; the client is then the entry the outermost trusted
    proxy appended, counted from the right. Entries further left are
    client-controlled and ignored.
    """
    hops = get_engine(request).settings.trusted_proxy_hops
    forwarded = request.headers.get("x-forwarded-for")
    if hops > 0 and forwarded:
        chain = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if len(chain) >= hops:
            return chain[-hops]
    return request.client.host if request.client else "unknown"
