"""Review subsystem lookup.

Reviews live in a separate service. The marketplace only asks whether an
actor has already reviewed a project; completion never waits on reviews.
"""

import logging
import uuid

import httpx
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.middleware import AuthenticatedActor
from app.config import settings
from app.errors import UnauthorizedActor
from app.models.project import ProjectStatus
from app.services.project import get_project

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT = 10  # seconds


class ReviewClient:
    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def has_reviewed(self, actor_id: uuid.UUID, project_id: uuid.UUID) -> bool:
        if not self.base_url:
            return False

        async with httpx.AsyncClient(timeout=LOOKUP_TIMEOUT, transport=self._transport) as client:
            try:
                resp = await client.get(
                    f"{self.base_url}/projects/{project_id}/reviews",
                    params={"reviewerId": str(actor_id)},
                )
            except httpx.RequestError as e:
                logger.error("Review service request failed: %s", e)
                raise HTTPException(status_code=502, detail="Failed to reach review service")

        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            logger.error("Review service returned %d: %s", resp.status_code, resp.text[:500])
            raise HTTPException(
                status_code=502,
                detail=f"Review lookup failed (status {resp.status_code})",
            )

        data = resp.json()
        reviews = data.get("reviews", []) if isinstance(data, dict) else data
        return len(reviews) > 0


def get_review_client() -> ReviewClient:
    return ReviewClient(settings.review_service_url)


async def review_eligibility(
    db: AsyncSession,
    client: ReviewClient,
    project_id: uuid.UUID,
    actor: AuthenticatedActor,
) -> dict:
    """Whether the actor may still leave a review for the project."""
    project = await get_project(db, project_id)
    if actor.actor_id not in (project.customer_id, project.handyman_id):
        raise UnauthorizedActor()

    if project.status is not ProjectStatus.COMPLETED:
        return {"project_id": project_id, "eligible": False, "reason": "Project is not completed"}
    if await client.has_reviewed(actor.actor_id, project_id):
        return {"project_id": project_id, "eligible": False, "reason": "Already reviewed"}
    return {"project_id": project_id, "eligible": True, "reason": None}
