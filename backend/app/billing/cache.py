"""Page-cache invalidation for views that display a user's plan."""
import requests

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

BILLING_VIEWS = ("/app", "/settings/billing", "/settings/profile")


def billing_paths(username: str | None) -> list[str]:
    """
    Dashboard and settings pages, plus the user's public pages.

    Public pages are the profile at /c/<username> and every collection
    under it, sent as the /c/<username>/[slug] route pattern so the
    frontend revalidates all of them without knowing their slugs here.
    """
    paths = list(BILLING_VIEWS)
    if username:
        paths.append(f"/c/{username}")
        paths.append(f"/c/{username}/[slug]")
    return paths


class RevalidationClient:
    """
    Posts path sets to the frontend's revalidation endpoint.

    Without REVALIDATE_URL configured every call is a no-op, which is the
    normal state for local development.
    """

    def __init__(self, url: str | None = None, secret: str | None = None, timeout: float = 5.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def invalidate(self, paths: list[str]) -> None:
        if not self.enabled:
            logger.debug("revalidation disabled; skipping %s", paths)
            return
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"
        resp = requests.post(self.url, headers=headers, json={"paths": paths}, timeout=self.timeout)
        resp.raise_for_status()
        logger.info("revalidated %d paths", len(paths))


def get_revalidation_client() -> RevalidationClient:
    return RevalidationClient(
        url=settings.REVALIDATE_URL,
        secret=settings.REVALIDATE_SECRET,
        timeout=settings.REVALIDATE_TIMEOUT_SECONDS,
    )
