from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.models import TASK_PENDING, Task
from app.errors import InsufficientCredits, ProviderUnavailable, ValidationError
from app.services.credits import CreditsService
from app.services.outcomes import failure
from app.services.pricing import image_cost, video_cost
from app.services.provider import GenerationProvider, ProviderError, ProviderRequest
from app.services.reconciliation import TaskReconciler
from app.utils.logging import get_logger
from app.utils.time import utcnow


logger = get_logger("generation")


@dataclass(frozen=True)
class ModeSpec:
    provider: str
    task_type: str
    requires_images: bool


MODES: Dict[str, ModeSpec] = {
    "text-to-image": ModeSpec("nanobanana", "image", requires_images=False),
    "image-to-image": ModeSpec("nanobanana", "image", requires_images=True),
    "image-to-video": ModeSpec("kling", "video", requires_images=True),
}


@dataclass
class GenerationRequest:
    mode: str
    prompt: str
    num_images: int = 1
    image_urls: List[str] = field(default_factory=list)
    image_size: str = "16:9"
    duration: str = "5"
    sound: bool = False


class GenerationService:
    def __init__(
        self,
        session: AsyncSession,
        providers: Mapping[str, GenerationProvider],
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.providers = providers
        self.settings = settings or get_settings()

    def validate(self, request: GenerationRequest) -> ModeSpec:
        spec = MODES.get(request.mode)
        if not spec:
            raise ValidationError("invalid_mode")
        request.prompt = (request.prompt or "").strip()
        if not request.prompt:
            raise ValidationError("empty_prompt", "prompt is required")
        if len(request.prompt) > self.settings.max_prompt_length:
            raise ValidationError("prompt_too_long", f"prompt exceeds {self.settings.max_prompt_length} characters")
        request.image_urls = [url.strip() for url in request.image_urls or [] if url and url.strip()]
        if spec.requires_images and not request.image_urls:
            raise ValidationError("refs_required", "at least one image URL is required")
        if spec.task_type == "video":
            request.num_images = 1
            request.duration = str(request.duration)
        elif request.num_images < 1 or request.num_images > self.settings.max_images_per_request:
            raise ValidationError("num_images", f"numImages must be between 1 and {self.settings.max_images_per_request}")
        return spec

    def cost(self, spec: ModeSpec, request: GenerationRequest) -> int:
        if spec.task_type == "video":
            return video_cost(request.duration, request.sound)
        return image_cost(request.num_images, self.settings.credits_per_image)

    async def submit(self, user_id: int, request: GenerationRequest, callback_url: str) -> Task:
        spec = self.validate(request)
        amount = self.cost(spec, request)
        provider = self.providers.get(spec.provider)
        if provider is None:
            raise ProviderUnavailable(f"no client for provider {spec.provider}")

        now = utcnow()
        task = Task(
            user_id=user_id,
            provider=spec.provider,
            task_type=spec.task_type,
            mode=request.mode,
            prompt=request.prompt,
            num_images=request.num_images,
            options={
                "image_urls": request.image_urls,
                "image_size": request.image_size,
                "duration": request.duration,
                "sound": request.sound,
            },
            status=TASK_PENDING,
            images=[],
            videos=[],
            credits_reserved=amount,
            credits_deducted=False,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(task)
        await self.session.flush()
        try:
            await CreditsService(self.session).reserve(
                user_id,
                amount,
                meta={"task_id": task.id, "mode": request.mode},
                idempotency_key=f"reserve:task:{task.id}",
            )
        except InsufficientCredits:
            await self.session.rollback()
            logger.info("generation_rejected", user_id=user_id, mode=request.mode, required=amount)
            raise
        await self.session.commit()

        provider_request = ProviderRequest(
            mode=request.mode,
            prompt=request.prompt,
            num_images=request.num_images,
            image_urls=request.image_urls,
            image_size=request.image_size,
            duration=request.duration,
            sound=request.sound,
        )
        try:
            provider_task_id = await provider.create_task(provider_request, callback_url)
        except ProviderError as exc:
            logger.warning(
                "provider_create_failed",
                task_id=task.id,
                provider=spec.provider,
                error=str(exc),
                status_code=exc.status_code,
            )
            reconciler = TaskReconciler(self.session, self.providers, self.settings)
            await reconciler.apply(task, failure(str(exc), "provider_unavailable"), force_refund=True)
            raise ProviderUnavailable(str(exc)) from exc

        task.task_id = provider_task_id
        task.updated_at = utcnow()
        await self.session.commit()
        logger.info(
            "generation_submitted",
            task_id=task.id,
            provider_task_id=provider_task_id,
            user_id=user_id,
            mode=request.mode,
            credits=amount,
        )
        return task
