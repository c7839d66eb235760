from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from app.config import get_settings
from app.services.provider import ProviderError, compute_webhook_signature


MOBILE = "09121234567"


def login(client: TestClient, fakes, mobile: str = MOBILE, first: str = "Sara", last: str = "Karimi") -> dict:
    resp = client.post("/api/auth/send-otp", json={"mobileNumber": mobile})
    assert resp.status_code == 200, resp.text
    receptor, code = fakes["sms"].sent[-1]
    assert receptor == mobile
    resp = client.post("/api/auth/verify-otp", json={"mobileNumber": mobile, "otp": code})
    assert resp.status_code == 200, resp.text
    if resp.json()["isNewUser"]:
        resp = client.post("/api/auth/register", json={"firstName": first, "lastName": last})
        assert resp.status_code == 201, resp.text
    return resp.json()["user"]


def choose_free_plan(client: TestClient) -> dict:
    resp = client.post("/api/user/plan", json={"plan": "free"})
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]


def nb_callback(task_id: str, url: str = "https://cdn.test/out.png") -> dict:
    return {"code": 200, "msg": "success", "data": {"taskId": task_id, "info": {"resultImageUrl": url}}}


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"ok": True}


def test_otp_registration_flow(client: TestClient, fakes) -> None:
    client.post("/api/auth/send-otp", json={"mobileNumber": MOBILE})
    wrong = client.post("/api/auth/verify-otp", json={"mobileNumber": MOBILE, "otp": "000000"})
    assert (wrong.status_code, wrong.json()["error"]) == (400, "otp_invalid")

    code = fakes["sms"].sent[-1][1]
    resp = client.post("/api/auth/verify-otp", json={"mobileNumber": MOBILE, "otp": code})
    assert resp.json() == {"success": True, "isNewUser": True}
    assert client.get("/api/me").status_code == 401

    short = client.post("/api/auth/register", json={"firstName": "S", "lastName": "Karimi"})
    assert short.json()["error"] == "invalid_name"
    resp = client.post("/api/auth/register", json={"firstName": "Sara", "lastName": "Karimi"})
    assert resp.status_code == 201
    user = resp.json()["user"]
    assert (user["mobileNumber"], user["credits"], user["currentPlan"]) == (MOBILE, 0, None)
    assert client.get("/api/me").json()["id"] == user["id"]

    # The code was consumed.
    again = client.post("/api/auth/verify-otp", json={"mobileNumber": MOBILE, "otp": code})
    assert again.json()["error"] == "otp_not_found"

    client.get("/api/auth/logout")
    assert client.get("/api/me").status_code == 401
    assert client.post("/api/auth/send-otp", json={"mobileNumber": MOBILE}).status_code == 429


def test_send_otp_validation_and_sms_failure(client: TestClient, fakes) -> None:
    resp = client.post("/api/auth/send-otp", json={"mobileNumber": "12345"})
    assert (resp.status_code, resp.json()["error"]) == (400, "invalid_mobile")

    fakes["sms"].fail = True
    resp = client.post("/api/auth/send-otp", json={"mobileNumber": MOBILE})
    assert (resp.status_code, resp.json()["error"]) == (502, "sms_failed")

    fakes["sms"].fail = False
    assert client.post("/api/auth/send-otp", json={"mobileNumber": MOBILE}).status_code == 200


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/api/me"),
        ("post", "/api/generate/text-to-image"),
        ("get", "/api/generate/task-status/nb-1"),
        ("get", "/api/user/history"),
        ("delete", "/api/user/video-history"),
        ("get", "/api/user/billing"),
        ("post", "/api/payment/zarinpal/request"),
        ("get", "/api/admin/discounts"),
    ],
)
def test_protected_routes_require_a_session(client: TestClient, method: str, path: str) -> None:
    resp = getattr(client, method)(path)
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"


def test_image_generation_round_trip(client: TestClient, fakes) -> None:
    login(client, fakes)
    assert choose_free_plan(client)["credits"] == 12

    resp = client.post("/api/generate/text-to-image", json={"prompt": "a red fox", "numImages": 3})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body == {"success": True, "taskId": "nb-1", "status": "pending", "creditsReserved": 12}
    _, _, callback_url = fakes["providers"]["nanobanana"].created[0]
    assert callback_url == "https://studio.test/api/generate/callback"
    assert client.get("/api/me").json()["credits"] == 0

    status = client.get("/api/generate/task-status/nb-1").json()
    assert status["status"] == "processing"

    resp = client.post("/api/generate/callback", json=nb_callback("nb-1"))
    assert resp.json() == {"ok": True, "taskId": "nb-1", "status": "completed", "applied": True}
    resp = client.post("/api/generate/callback", json=nb_callback("nb-1"))
    assert resp.json()["applied"] is False

    status = client.get("/api/generate/task-status/nb-1").json()
    assert (status["status"], status["images"]) == ("completed", ["https://cdn.test/out.png"])
    me = client.get("/api/me").json()
    assert (me["credits"], me["imagesGeneratedThisMonth"]) == (0, 1)

    images = client.get("/api/user/history").json()["images"]
    assert [entry["url"] for entry in images] == ["https://cdn.test/out.png"]
    assert images[0]["taskId"] == "nb-1"
    assert client.get("/api/user/video-history").json() == {"videos": []}

    assert client.delete(f"/api/user/history/{images[0]['id']}").json() == {"success": True}
    assert client.delete(f"/api/user/history/{images[0]['id']}").status_code == 404
    assert client.get("/api/user/history").json() == {"images": []}


def test_failed_generation_refunds_through_callback(client: TestClient, fakes) -> None:
    login(client, fakes)
    choose_free_plan(client)
    client.post("/api/generate/text-to-image", json={"prompt": "a red fox", "numImages": 3})

    failure = {"code": 400, "msg": "", "data": {"taskId": "nb-1", "info": {}}}
    assert client.post("/api/generate/callback", json=failure).json()["status"] == "failed"
    assert client.post("/api/generate/callback", json=failure).json()["applied"] is False

    status = client.get("/api/generate/task-status/nb-1").json()
    assert status["error"].startswith("Content policy violation")
    assert client.get("/api/me").json()["credits"] == 12


def test_generation_rejections(client: TestClient, fakes) -> None:
    login(client, fakes)

    resp = client.post("/api/generate/text-to-image", json={"prompt": "a red fox"})
    assert (resp.status_code, resp.json()["error"]) == (403, "no_credits")

    choose_free_plan(client)
    resp = client.post("/api/generate/image-to-image", json={"prompt": "a red fox"})
    assert (resp.status_code, resp.json()["error"]) == (400, "refs_required")
    resp = client.post("/api/generate/text-to-image", json={"prompt": "  "})
    assert resp.json()["error"] == "empty_prompt"

    fakes["providers"]["nanobanana"].fail_create = ProviderError("upstream down", 503)
    resp = client.post("/api/generate/text-to-image", json={"prompt": "a red fox", "numImages": 2})
    assert (resp.status_code, resp.json()["error"]) == (502, "provider_unavailable")
    assert client.get("/api/me").json()["credits"] == 12


@pytest.mark.parametrize("num_images", ["lots", [], {}, 2.5, True, "1.5"])
def test_malformed_image_count_is_rejected_without_charge(client: TestClient, fakes, num_images) -> None:
    login(client, fakes)
    choose_free_plan(client)

    resp = client.post("/api/generate/text-to-image", json={"prompt": "cat", "numImages": num_images})
    assert (resp.status_code, resp.json()["error"]) == (400, "num_images")
    assert fakes["providers"]["nanobanana"].created == []
    assert client.get("/api/me").json()["credits"] == 12


def test_image_count_accepts_integer_strings(client: TestClient, fakes) -> None:
    login(client, fakes)
    choose_free_plan(client)

    resp = client.post("/api/generate/text-to-image", json={"prompt": "cat", "numImages": "2"})
    assert resp.json()["creditsReserved"] == 8


def test_sound_flag_reads_string_booleans(client: TestClient, fakes) -> None:
    login(client, fakes)
    authority = client.post("/api/payment/zarinpal/request", json={"type": "plan", "plan": "explorer"}).json()["authority"]
    client.get("/api/payment/zarinpal/verify", params={"Authority": authority, "Status": "OK"}, follow_redirects=False)
    video = {"prompt": "waves", "imageUrls": ["https://cdn.test/in.png"], "duration": "5"}

    silent = client.post("/api/generate/image-to-video", json={**video, "sound": "false"})
    assert silent.json()["creditsReserved"] == 55
    loud = client.post("/api/generate/image-to-video", json={**video, "sound": "true"})
    assert loud.json()["creditsReserved"] == 110
    resp = client.post("/api/generate/image-to-video", json={**video, "sound": "maybe"})
    assert (resp.status_code, resp.json()["error"]) == (400, "invalid_sound")
    assert client.get("/api/me").json()["credits"] == 35


def test_task_status_is_owner_only(client: TestClient, fakes) -> None:
    login(client, fakes)
    choose_free_plan(client)
    task_id = client.post("/api/generate/text-to-image", json={"prompt": "fox"}).json()["taskId"]
    client.get("/api/auth/logout")

    login(client, fakes, mobile="09127654321", first="Reza", last="Ahmadi")
    resp = client.get(f"/api/generate/task-status/{task_id}")
    assert (resp.status_code, resp.json()["error"]) == (404, "task_not_found")


def test_video_generation_lands_in_video_history(client: TestClient, fakes) -> None:
    login(client, fakes)
    choose_free_plan(client)
    video = {"prompt": "waves", "imageUrls": ["https://cdn.test/in.png"], "duration": "5"}
    assert client.post("/api/generate/image-to-video", json=video).json()["error"] == "no_credits"
    assert fakes["providers"]["kling"].created == []

    authority = client.post("/api/payment/zarinpal/request", json={"type": "plan", "plan": "explorer"}).json()["authority"]
    client.get("/api/payment/zarinpal/verify", params={"Authority": authority, "Status": "OK"}, follow_redirects=False)

    resp = client.post("/api/generate/image-to-video", json={**video, "sound": True})
    assert resp.json()["creditsReserved"] == 110
    task_id = resp.json()["taskId"]
    _, request, _ = fakes["providers"]["kling"].created[0]
    assert (request.duration, request.sound, request.image_urls) == ("5", True, ["https://cdn.test/in.png"])

    callback = {
        "code": 200,
        "data": {"taskId": task_id, "state": "success", "resultJson": '{"resultUrls": ["https://cdn.test/out.mp4"]}'},
    }
    assert client.post("/api/generate/callback", json=callback).json()["applied"] is True
    status = client.get(f"/api/generate/task-status/{task_id}").json()
    assert (status["type"], status["videos"]) == ("video", ["https://cdn.test/out.mp4"])
    videos = client.get("/api/user/video-history").json()["videos"]
    assert [entry["url"] for entry in videos] == ["https://cdn.test/out.mp4"]
    me = client.get("/api/me").json()
    assert (me["credits"], me["imagesGeneratedThisMonth"]) == (90, 0)


def test_callback_edge_cases(client: TestClient) -> None:
    resp = client.post(
        "/api/generate/callback",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert (resp.status_code, resp.json()) == (200, {"ok": False, "error": "invalid_json"})

    resp = client.post("/api/generate/callback", json={"code": 200, "data": {}})
    assert (resp.status_code, resp.json()["error"]) == (400, "task_id_missing")

    resp = client.post("/api/generate/callback", json=nb_callback("nb-404"))
    assert (resp.status_code, resp.json()["error"]) == (404, "task_not_found")


def test_callback_signature_enforced(settings, fakes, monkeypatch: pytest.MonkeyPatch) -> None:
    from app.web.app import create_app

    monkeypatch.setenv("WEBHOOK_REQUIRE_SIGNATURE", "true")
    monkeypatch.setenv("WEBHOOK_HMAC_KEY", "hook-key")
    get_settings.cache_clear()
    app = create_app(providers=fakes["providers"], sms=fakes["sms"], zarinpal=fakes["zarinpal"])
    payload = nb_callback("nb-9")

    with TestClient(app) as client:
        assert client.post("/api/generate/callback", json=payload).json()["error"] == "missing_signature_headers"

        now = str(int(time.time()))
        bad = client.post(
            "/api/generate/callback",
            json=payload,
            headers={"x-webhook-timestamp": now, "x-webhook-signature": "bogus"},
        )
        assert (bad.status_code, bad.json()["error"]) == (401, "invalid_signature")

        stale = str(int(time.time()) - 3600)
        resp = client.post(
            "/api/generate/callback",
            json=payload,
            headers={
                "x-webhook-timestamp": stale,
                "x-webhook-signature": compute_webhook_signature("nb-9", stale, "hook-key"),
            },
        )
        assert resp.json()["error"] == "timestamp_out_of_range"

        signed = client.post(
            "/api/generate/callback",
            json=payload,
            headers={
                "x-webhook-timestamp": now,
                "x-webhook-signature": compute_webhook_signature("nb-9", now, "hook-key"),
            },
        )
        # Signature accepted; the task simply does not exist.
        assert (signed.status_code, signed.json()["error"]) == (404, "task_not_found")


def test_plan_purchase_through_zarinpal(client: TestClient, fakes) -> None:
    login(client, fakes)
    resp = client.post("/api/user/plan", json={"plan": "creator"})
    assert resp.json()["error"] == "payment_required"

    resp = client.post("/api/payment/zarinpal/request", json={"type": "plan", "plan": "creator"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["free"] is False
    assert body["paymentUrl"].endswith(body["authority"])
    assert fakes["zarinpal"].requests[0]["callback_url"] == "https://studio.test/api/payment/zarinpal/verify"

    resp = client.get(
        "/api/payment/zarinpal/verify",
        params={"Authority": body["authority"], "Status": "OK"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://studio.test/dashboard/billing?payment=success"

    me = client.get("/api/me").json()
    assert (me["currentPlan"], me["credits"]) == ("creator", 600)
    history = client.get("/api/user/billing").json()["billingHistory"]
    assert [(entry["status"], entry["amount"], entry["refId"]) for entry in history] == [("paid", 999_000, "201")]

    resp = client.post("/api/payment/zarinpal/request", json={"type": "credits", "creditPackageId": "pack_100"})
    authority = resp.json()["authority"]
    resp = client.get(
        "/api/payment/zarinpal/verify",
        params={"Authority": authority, "Status": "NOK"},
        follow_redirects=False,
    )
    assert resp.headers["location"].endswith("payment=cancelled")
    assert client.get("/api/me").json()["credits"] == 600


def test_payment_verify_without_authority_redirects_to_error(client: TestClient) -> None:
    resp = client.get("/api/payment/zarinpal/verify", follow_redirects=False)
    assert resp.headers["location"] == "https://studio.test/dashboard/billing?payment=error"


def test_admin_discounts_and_validation(client: TestClient) -> None:
    assert client.post("/admin/login", json={"username": "admin", "password": "nope"}).status_code == 401
    assert client.post("/admin/login", json={"username": "admin", "password": "admin-pass"}).json() == {"ok": True}

    resp = client.post(
        "/api/admin/discounts",
        json={"code": "nowruz", "discountType": "percentage", "discountValue": 20, "capacity": 5},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["discount"]["code"] == "NOWRUZ"
    duplicate = client.post(
        "/api/admin/discounts",
        json={"code": "NOWRUZ", "discountType": "fixed", "discountValue": 20, "capacity": 5},
    )
    assert duplicate.json()["error"] == "discount_exists"

    listed = client.get("/api/admin/discounts").json()["discounts"]
    assert [(d["code"], d["usedCount"]) for d in listed] == [("NOWRUZ", 0)]

    resp = client.post("/api/discount/validate", json={"code": "nowruz", "amount": 1000})
    assert resp.json()["discount"]["finalAmount"] == 800
    resp = client.post("/api/discount/validate", json={"code": "missing", "amount": 1000})
    assert (resp.status_code, resp.json()) == (404, {"error": "discount_not_found", "valid": False})
    resp = client.post("/api/discount/validate", json={"amount": 1000})
    assert resp.status_code == 400


def test_profile_update(client: TestClient, fakes) -> None:
    login(client, fakes)
    resp = client.patch("/api/user/profile", json={"lastName": " Rahimi "})
    assert resp.status_code == 200, resp.text
    user = resp.json()["user"]
    assert (user["firstName"], user["lastName"]) == ("Sara", "Rahimi")

    resp = client.patch("/api/user/profile", json={"firstName": "S", "lastName": "Valid"})
    assert (resp.status_code, resp.json()["error"]) == (400, "invalid_name")
    assert client.get("/api/me").json()["lastName"] == "Rahimi"


def test_admin_lists_users(client: TestClient, fakes) -> None:
    login(client, fakes)
    assert client.get("/api/admin/users").status_code == 401
    client.post("/admin/login", json={"username": "admin", "password": "admin-pass"})
    users = client.get("/api/admin/users").json()["users"]
    assert [(u["mobileNumber"], u["credits"]) for u in users] == [(MOBILE, 0)]
