"""Request helpers shared by the auth routes and middleware."""

import ipaddress
import logging

from fastapi import Request

logger = logging.getLogger(__name__)

LOCAL_PROXY_HOSTS = ("127.0.0.1", "::1", "localhost")


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str | None:
    """Get the client IP address from a request.

    Priority order:
    1. CF-Connecting-IP (set by Cloudflare, not client controlled)
    2. X-Real-IP, only when the direct peer is a local reverse proxy
    3. Direct client connection

    X-Forwarded-For is never trusted here because clients can spoof it, and
    the IP drives failed-login lockout and restriction checks.
    """
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        ip = cf_ip.strip()
        if _is_valid_ip(ip):
            return ip
        logger.warning(f"Invalid CF-Connecting-IP: {cf_ip}")

    if request.client and request.client.host in LOCAL_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def get_user_agent(request: Request) -> str | None:
    """Return the User-Agent header truncated to the stored column width."""
    user_agent = request.headers.get("User-Agent")
    if user_agent is None:
        return None
    return user_agent[:512]


def describe_device(user_agent: str | None) -> str | None:
    """Derive a short device label ("Firefox on Linux") from a User-Agent."""
    if not user_agent:
        return None

    ua = user_agent.lower()
    browser = "Unknown browser"
    for needle, label in (
        ("edg/", "Edge"),
        ("firefox/", "Firefox"),
        ("chrome/", "Chrome"),
        ("safari/", "Safari"),
        ("curl/", "curl"),
        ("python-httpx", "httpx"),
    ):
        if needle in ua:
            browser = label
            break

    platform = "unknown OS"
    for needle, label in (
        ("android", "Android"),
        ("iphone", "iOS"),
        ("ipad", "iOS"),
        ("windows", "Windows"),
        ("mac os", "macOS"),
        ("linux", "Linux"),
    ):
        if needle in ua:
            platform = label
            break

    return f"{browser} on {platform}"
