"""Client for the human review marketplace (Prolific)."""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from uuid import uuid4

import httpx

from langloop.services.errors import CapabilityError

logger = logging.getLogger(__name__)


@dataclass
class StudyRequest:
    """What the marketplace needs to put a batch of translations in front of reviewers."""

    task_id: str
    batch_id: str
    languages: list[str]
    translations: dict[str, str]
    previous_scores: dict[str, float]


@dataclass
class PublishedStudy:
    study_id: str
    public_url: Optional[str] = None
    estimated_completion_time: Optional[str] = None


class ReviewMarketplace(Protocol):
    async def create_study(self, request: StudyRequest) -> str:
        ...

    async def publish_study(self, study_id: str) -> PublishedStudy:
        ...


class ProlificClient:
    """Minimal Prolific REST client: create a study and publish it."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.prolific.com/api/v1",
        project_id: Optional[str] = None,
        reward_pence: int = 300,
        estimated_minutes: int = 15,
        timeout: float = 30.0,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.reward_pence = reward_pence
        self.estimated_minutes = estimated_minutes
        self.timeout = timeout

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        headers = {"Authorization": f"Token {self.api_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                response = await client.request(method, path, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise CapabilityError("review marketplace", f"{method} {path}: {e}") from e

    async def create_study(self, request: StudyRequest) -> str:
        """
        Create a draft study for a review batch.

        Args:
            request: Batch languages, translations and their previous scores

        Returns:
            The marketplace study id
        """
        languages = ", ".join(request.languages)
        payload = {
            "name": f"Translation review {request.batch_id}",
            "internal_name": f"{request.task_id}:{request.batch_id}",
            "description": (
                f"Review translations ({languages}) for quality and compliance "
                "with the editorial guidelines, then rate each from 1 (poor) to 5 (excellent)."
            ),
            "reward": self.reward_pence,
            "estimated_completion_time": self.estimated_minutes,
            "total_available_places": len(request.languages),
            "completion_codes": [{"code": request.batch_id, "code_type": "COMPLETED", "actions": []}],
        }
        if self.project_id:
            payload["project"] = self.project_id

        body = await self._request("POST", "/studies/", payload)
        study_id = body.get("id")
        if not study_id:
            raise CapabilityError("review marketplace", "study creation returned no id")
        logger.info(f"Created Prolific study {study_id} for batch {request.batch_id}")
        return study_id

    async def publish_study(self, study_id: str) -> PublishedStudy:
        await self._request("POST", f"/studies/{study_id}/transition/", {"action": "PUBLISH"})
        logger.info(f"Published Prolific study {study_id}")
        return PublishedStudy(
            study_id=study_id,
            public_url=f"https://app.prolific.com/studies/{study_id}",
            estimated_completion_time="2-24 hours",
        )


class DemoMarketplace:
    """Creates local study ids without calling out; results are posted manually."""

    async def create_study(self, request: StudyRequest) -> str:
        return f"demo_study_{uuid4().hex[:12]}"

    async def publish_study(self, study_id: str) -> PublishedStudy:
        return PublishedStudy(study_id=study_id, public_url=None, estimated_completion_time="manual")
