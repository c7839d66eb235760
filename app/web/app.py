from __future__ import annotations

import asyncio
import secrets
import time
from datetime import datetime
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from app.config import get_settings
from app.db.models import BillingEntry, Discount, HistoryEntry, Task, User
from app.db.session import create_all, create_engine, create_sessionmaker
from app.errors import ServiceError, TaskNotFound, ValidationError
from app.services.credits import CreditsService
from app.services.discounts import DiscountService
from app.services.generation import GenerationRequest, GenerationService
from app.services.history import HistoryService
from app.services.kavenegar import KavenegarClient, SmsError
from app.services.otp import OtpService
from app.services.payments import PaymentsService
from app.services.poller import PollManager
from app.services.provider import GenerationProvider, extract_task_id, verify_webhook_signature
from app.services.rate_limit import RateLimiter
from app.services.reconciliation import TaskReconciler
from app.services.registry import build_providers
from app.services.users import UserService
from app.services.zarinpal import ZarinpalClient, ZarinpalError
from app.utils.amounts import to_amount, to_count
from app.utils.logging import bind_context, configure_logging, get_logger
from app.utils.text import to_flag


logger = get_logger("web")

PAYMENT_REDIRECTS = {
    "success": "success",
    "already_verified": "success",
    "cancelled": "cancelled",
    "failed": "failed",
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _service_error(exc: ServiceError) -> JSONResponse:
    return JSONResponse({"error": exc.code, "message": exc.message}, status_code=exc.status_code)


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "unauthorized"}, status_code=401)


def _is_logged_in(request: Request) -> bool:
    return bool(request.session.get("user_id"))


def _is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_logged_in"))


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def _user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "mobileNumber": user.mobile_number,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "credits": user.credits,
        "currentPlan": user.current_plan,
        "planStartDate": _iso(user.plan_start_date),
        "planEndDate": _iso(user.plan_end_date),
        "imagesGeneratedThisMonth": user.images_generated_this_month,
        "monthlyResetDate": _iso(user.monthly_reset_date),
    }


def _task_payload(task: Task) -> dict[str, Any]:
    return {
        "taskId": task.task_id,
        "status": task.status,
        "type": task.task_type,
        "images": list(task.images or []),
        "videos": list(task.videos or []),
        "error": task.error,
        "prompt": task.prompt,
        "creditsReserved": task.credits_reserved,
        "createdAt": _iso(task.created_at),
        "completedAt": _iso(task.completed_at),
    }


def _history_payload(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "url": entry.url,
        "prompt": entry.prompt,
        "timestamp": _iso(entry.timestamp),
        "taskId": entry.task_id,
    }


def _billing_payload(entry: BillingEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "date": _iso(entry.date),
        "type": entry.kind,
        "plan": entry.plan,
        "credits": entry.credits,
        "amount": entry.amount,
        "originalAmount": entry.original_amount,
        "discountCode": entry.discount_code,
        "discountAmount": entry.discount_amount,
        "status": entry.status,
        "refId": entry.ref_id,
    }


def _discount_payload(discount: Discount) -> dict[str, Any]:
    return {
        "id": discount.id,
        "code": discount.code,
        "discountType": discount.discount_type,
        "discountValue": discount.discount_value,
        "capacity": discount.capacity,
        "usedCount": discount.used_count,
        "expiresAt": _iso(discount.expires_at),
        "isActive": discount.is_active,
        "createdAt": _iso(discount.created_at),
        "updatedAt": _iso(discount.updated_at),
    }


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("invalid_expires_at") from exc


def create_app(
    providers: Mapping[str, GenerationProvider] | None = None,
    sms: KavenegarClient | None = None,
    zarinpal: ZarinpalClient | None = None,
) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="Banana Studio")
    app.add_middleware(SessionMiddleware, secret_key=settings.web_secret)
    app.state.engine = create_engine(settings.database_url)
    app.state.sessionmaker = create_sessionmaker(app.state.engine)
    app.state.providers = providers
    app.state.sms = sms
    app.state.zarinpal = zarinpal
    app.state.otp_limiter = RateLimiter(settings.otp_cooldown_seconds)
    app.state.poller = None
    app.state.poller_task = None

    @app.on_event("startup")
    async def startup() -> None:
        if settings.database_auto_create:
            await create_all(app.state.engine)
        if app.state.providers is None:
            app.state.providers = build_providers(settings)
        if app.state.sms is None:
            app.state.sms = KavenegarClient(settings.kavenegar_api_key, settings.kavenegar_verify_template)
        if app.state.zarinpal is None:
            app.state.zarinpal = ZarinpalClient(settings.zarinpal_merchant_id, sandbox=settings.zarinpal_sandbox)
        poller = PollManager(app.state.sessionmaker, app.state.providers, settings)
        app.state.poller = poller
        if settings.reconciler_enabled:
            app.state.poller_task = asyncio.create_task(poller.watch_pending())

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.poller_task
        if task:
            task.cancel()
        for provider in (app.state.providers or {}).values():
            try:
                await provider.close()
            except Exception as exc:
                logger.warning("provider_close_failed", provider=provider.name, error=str(exc))
        await app.state.engine.dispose()

    @app.get("/health")
    async def health():
        return {"ok": True}

    # Authentication

    @app.post("/api/auth/send-otp")
    async def api_send_otp(request: Request):
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            service = OtpService(session, app.state.sms, settings, limiter=app.state.otp_limiter)
            try:
                expires_at = await service.send_otp(str(data.get("mobileNumber") or ""))
            except ServiceError as exc:
                return _service_error(exc)
            except SmsError:
                return JSONResponse({"error": "sms_failed", "message": "Failed to send OTP"}, status_code=502)
        return {"success": True, "expiresAt": _iso(expires_at)}

    @app.post("/api/auth/verify-otp")
    async def api_verify_otp(request: Request):
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            service = OtpService(session, app.state.sms, settings)
            try:
                mobile = await service.verify_otp(str(data.get("mobileNumber") or ""), str(data.get("otp") or ""))
            except ServiceError as exc:
                return _service_error(exc)
            user = await CreditsService(session).get_user_by_mobile(mobile)
            if user is None:
                request.session["verified_mobile"] = mobile
                return {"success": True, "isNewUser": True}
            request.session.pop("verified_mobile", None)
            request.session["user_id"] = user.id
            return {"success": True, "isNewUser": False, "user": _user_payload(user)}

    @app.post("/api/auth/register")
    async def api_register(request: Request):
        mobile = request.session.get("verified_mobile")
        if not mobile:
            return JSONResponse({"error": "otp_required"}, status_code=401)
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            service = OtpService(session, app.state.sms, settings)
            try:
                user = await service.register_user(
                    mobile,
                    str(data.get("firstName") or ""),
                    str(data.get("lastName") or ""),
                )
            except ServiceError as exc:
                return _service_error(exc)
            request.session.pop("verified_mobile", None)
            request.session["user_id"] = user.id
            return JSONResponse({"success": True, "user": _user_payload(user)}, status_code=201)

    @app.get("/api/auth/logout")
    async def api_logout(request: Request):
        request.session.clear()
        return {"ok": True}

    @app.get("/api/me")
    async def api_me(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            user = await session.get(User, int(request.session["user_id"]))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            return _user_payload(user)

    @app.patch("/api/user/profile")
    async def api_update_profile(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            user = await session.get(User, int(request.session["user_id"]))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            try:
                await UserService(session).update_profile(user, data.get("firstName"), data.get("lastName"))
            except ServiceError as exc:
                return _service_error(exc)
            await session.commit()
            return {"success": True, "user": _user_payload(user)}

    # Generation

    async def submit_generation(request: Request, mode: str):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _read_json(request)
        image_urls = data.get("imageUrls") or []
        if isinstance(image_urls, str):
            image_urls = [image_urls]
        try:
            num_images = to_count(data.get("numImages"), default=1)
        except ValueError:
            return _service_error(ValidationError("num_images", "numImages must be a whole number"))
        try:
            sound = to_flag(data.get("sound"))
        except ValueError:
            return _service_error(ValidationError("invalid_sound", "sound must be true or false"))
        generation_request = GenerationRequest(
            mode=mode,
            prompt=str(data.get("prompt") or ""),
            num_images=num_images,
            image_urls=[str(url) for url in image_urls],
            image_size=str(data.get("imageSize") or "16:9"),
            duration=str(data.get("duration") or "5"),
            sound=sound,
        )
        async with app.state.sessionmaker() as session:
            service = GenerationService(session, app.state.providers, settings)
            try:
                task = await service.submit(
                    int(request.session["user_id"]),
                    generation_request,
                    settings.callback_url(str(request.base_url)),
                )
            except ServiceError as exc:
                return _service_error(exc)
            return {
                "success": True,
                "taskId": task.task_id,
                "status": task.status,
                "creditsReserved": task.credits_reserved,
            }

    @app.post("/api/generate/text-to-image")
    async def api_text_to_image(request: Request):
        return await submit_generation(request, "text-to-image")

    @app.post("/api/generate/image-to-image")
    async def api_image_to_image(request: Request):
        return await submit_generation(request, "image-to-image")

    @app.post("/api/generate/image-to-video")
    async def api_image_to_video(request: Request):
        return await submit_generation(request, "image-to-video")

    @app.get("/api/generate/task-status/{task_id}")
    async def api_task_status(request: Request, task_id: str):
        if not _is_logged_in(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            reconciler = TaskReconciler(session, app.state.providers, settings)
            task = await reconciler.get_by_provider_id(task_id)
            # Other users' tasks are reported as missing.
            if not task or task.user_id != int(request.session["user_id"]):
                return _service_error(TaskNotFound(task_id))
            if not task.is_terminal:
                await reconciler.refresh(task)
            return _task_payload(task)

    @app.post("/api/generate/callback")
    async def api_generate_callback(request: Request):
        try:
            payload = await request.json()
        except Exception:
            # Providers retry on non-2xx; an unparseable body will never succeed.
            logger.warning("callback_invalid_json")
            return {"ok": False, "error": "invalid_json"}
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)

        task_id = extract_task_id(payload)
        if not task_id:
            return JSONResponse({"ok": False, "error": "task_id_missing"}, status_code=400)

        timestamp = (request.headers.get("x-webhook-timestamp") or "").strip()
        signature = (request.headers.get("x-webhook-signature") or "").strip()
        require_signature = bool(settings.webhook_require_signature)
        webhook_hmac_key = settings.webhook_hmac_key.strip()

        if require_signature and not webhook_hmac_key:
            return JSONResponse({"ok": False, "error": "webhook_hmac_key_not_configured"}, status_code=503)

        if require_signature or (timestamp and signature and webhook_hmac_key):
            if not timestamp or not signature:
                return JSONResponse({"ok": False, "error": "missing_signature_headers"}, status_code=401)
            try:
                timestamp_int = int(timestamp)
            except (TypeError, ValueError):
                return JSONResponse({"ok": False, "error": "invalid_timestamp"}, status_code=401)

            now = int(time.time())
            max_skew = max(1, int(settings.webhook_max_skew_seconds))
            if abs(now - timestamp_int) > max_skew:
                return JSONResponse({"ok": False, "error": "timestamp_out_of_range"}, status_code=401)

            is_valid = verify_webhook_signature(
                task_id=task_id,
                timestamp_seconds=timestamp,
                received_signature=signature,
                webhook_hmac_key=webhook_hmac_key,
            )
            if not is_valid:
                return JSONResponse({"ok": False, "error": "invalid_signature"}, status_code=401)

        with bind_context(provider_task_id=task_id, source="callback"):
            async with app.state.sessionmaker() as session:
                reconciler = TaskReconciler(session, app.state.providers, settings)
                try:
                    result = await reconciler.handle_callback(payload)
                except ServiceError as exc:
                    return JSONResponse({"ok": False, "error": exc.code}, status_code=exc.status_code)
        return {"ok": True, "taskId": task_id, "status": result.status, "applied": result.applied}

    # History

    def register_history_routes(path: str, kind: str, key: str) -> None:
        @app.get(path, name=f"list_{kind}_history")
        async def list_history(request: Request):
            if not _is_logged_in(request):
                return _unauthorized()
            async with app.state.sessionmaker() as session:
                entries = await HistoryService(session, settings.history_limit).list(int(request.session["user_id"]), kind)
                return {key: [_history_payload(entry) for entry in entries]}

        @app.delete(path, name=f"clear_{kind}_history")
        async def clear_history(request: Request):
            if not _is_logged_in(request):
                return _unauthorized()
            async with app.state.sessionmaker() as session:
                removed = await HistoryService(session, settings.history_limit).clear(int(request.session["user_id"]), kind)
                await session.commit()
            return {"success": True, "removed": removed}

        @app.delete(path + "/{entry_id}", name=f"delete_{kind}_history_entry")
        async def delete_history_entry(request: Request, entry_id: str):
            if not _is_logged_in(request):
                return _unauthorized()
            async with app.state.sessionmaker() as session:
                deleted = await HistoryService(session, settings.history_limit).delete(
                    int(request.session["user_id"]), kind, entry_id
                )
                if not deleted:
                    return JSONResponse({"error": "not_found"}, status_code=404)
                await session.commit()
            return {"success": True}

    register_history_routes("/api/user/history", "image", "images")
    register_history_routes("/api/user/video-history", "video", "videos")

    # Billing and plans

    @app.get("/api/user/billing")
    async def api_billing(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            entries = await PaymentsService(session).list_billing(int(request.session["user_id"]))
            return {"billingHistory": [_billing_payload(entry) for entry in entries]}

    @app.post("/api/user/plan")
    async def api_change_plan(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            user = await session.get(User, int(request.session["user_id"]))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            try:
                await PaymentsService(session).change_plan(user, str(data.get("plan") or ""))
            except ServiceError as exc:
                return _service_error(exc)
            await session.commit()
            return {"success": True, "user": _user_payload(user)}

    @app.post("/api/discount/validate")
    async def api_discount_validate(request: Request):
        data = await _read_json(request)
        code = str(data.get("code") or "").strip()
        if not code:
            return JSONResponse({"error": "code_required", "valid": False}, status_code=400)
        async with app.state.sessionmaker() as session:
            try:
                quote = await DiscountService(session).validate(code, to_amount(data.get("amount")))
            except ServiceError as exc:
                return JSONResponse({"error": exc.code, "valid": False}, status_code=exc.status_code)
        return {
            "valid": True,
            "discount": {
                "code": quote.code,
                "discountType": quote.discount_type,
                "discountValue": quote.discount_value,
                "discountAmount": quote.discount_amount,
                "originalAmount": quote.original_amount,
                "finalAmount": quote.final_amount,
            },
        }

    @app.post("/api/payment/zarinpal/request")
    async def api_payment_request(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            user = await session.get(User, int(request.session["user_id"]))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            service = PaymentsService(session, app.state.zarinpal)
            try:
                result = await service.request_payment(
                    user,
                    str(data.get("type") or "plan"),
                    settings.payment_callback_url(str(request.base_url)),
                    plan_key=data.get("plan"),
                    package_id=data.get("creditPackageId"),
                    discount_code=data.get("discountCode"),
                )
            except ServiceError as exc:
                return _service_error(exc)
            except ZarinpalError as exc:
                logger.warning("zarinpal_request_failed", user_id=user.id, error=str(exc))
                return JSONResponse({"error": "payment_gateway_error"}, status_code=502)
            await session.commit()
        if result.free:
            return {"success": True, "free": True, "billingId": result.billing_id}
        return {
            "success": True,
            "free": False,
            "billingId": result.billing_id,
            "authority": result.authority,
            "paymentUrl": result.payment_url,
        }

    @app.get("/api/payment/zarinpal/verify")
    async def api_payment_verify(request: Request):
        authority = (request.query_params.get("Authority") or "").strip()
        status = (request.query_params.get("Status") or "").strip()
        base = (settings.public_base_url or str(request.base_url)).rstrip("/")
        outcome = "error"
        if authority:
            async with app.state.sessionmaker() as session:
                try:
                    outcome = await PaymentsService(session, app.state.zarinpal).verify_payment(authority, status)
                    await session.commit()
                except (ServiceError, ZarinpalError) as exc:
                    logger.warning("payment_verify_error", authority=authority, error=str(exc))
                    outcome = "error"
        redirect = PAYMENT_REDIRECTS.get(outcome, "error")
        return RedirectResponse(url=f"{base}/dashboard/billing?payment={redirect}", status_code=302)

    # Admin

    @app.post("/admin/login")
    async def admin_login(request: Request):
        data = await _read_json(request)
        username = str(data.get("username") or "")
        password = str(data.get("password") or "")
        if not settings.admin_password:
            return JSONResponse({"error": "admin_password_not_configured"}, status_code=503)
        ok = secrets.compare_digest(username, settings.admin_username) and secrets.compare_digest(
            password, settings.admin_password
        )
        if not ok:
            return JSONResponse({"error": "invalid_credentials"}, status_code=401)
        request.session["admin_logged_in"] = True
        return {"ok": True}

    @app.get("/api/admin/users")
    async def admin_list_users(request: Request):
        if not _is_admin(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            users = await UserService(session).list()
            return {
                "success": True,
                "users": [
                    {
                        "id": user.id,
                        "mobileNumber": user.mobile_number,
                        "firstName": user.first_name,
                        "lastName": user.last_name,
                        "credits": user.credits,
                        "currentPlan": user.current_plan,
                        "createdAt": _iso(user.created_at),
                    }
                    for user in users
                ],
            }

    @app.get("/api/admin/discounts")
    async def admin_list_discounts(request: Request):
        if not _is_admin(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            discounts = await DiscountService(session).list()
            return {"success": True, "discounts": [_discount_payload(discount) for discount in discounts]}

    @app.post("/api/admin/discounts")
    async def admin_create_discount(request: Request):
        if not _is_admin(request):
            return _unauthorized()
        data = await _read_json(request)
        async with app.state.sessionmaker() as session:
            try:
                discount = await DiscountService(session).create(
                    str(data.get("code") or ""),
                    str(data.get("discountType") or ""),
                    to_amount(data.get("discountValue")),
                    to_amount(data.get("capacity")),
                    expires_at=_parse_datetime(data.get("expiresAt")),
                    is_active=bool(data.get("isActive", True)),
                )
            except ServiceError as exc:
                return _service_error(exc)
            await session.commit()
            return JSONResponse({"success": True, "discount": _discount_payload(discount)}, status_code=201)

    return app
