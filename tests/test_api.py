"""API tests through Quart's test client."""
import asyncio
import threading
from io import BytesIO

import httpx
from werkzeug.datastructures import FileStorage

from docchat import auth, config, db
from docchat import main as docchat_main
from docchat.llm_client import ollama_client
from docchat.main import app, ingest_pipeline
from docchat.rag import loaders
from docchat.rag.web import WebLoader

PASSWORD = "Str0ng!pass"


class FakePage:
    def __init__(self, text):
        self._text = text

    def extract_text(self):
        return self._text


def fake_reader(page_texts):
    class FakeReader:
        def __init__(self, path):
            self.pages = [FakePage(text) for text in page_texts]

    return FakeReader


def pdf_upload(name: str = "report.pdf", data: bytes = b"%PDF-1.4 fake") -> dict:
    return {"pdf": FileStorage(stream=BytesIO(data), filename=name, content_type="application/pdf")}


async def login(client, email: str = "alice@example.com") -> dict:
    await client.post(
        "/api/v1/register",
        json={"username": email.split("@")[0], "email": email, "password": PASSWORD},
    )
    response = await client.post("/api/v1/login", json={"email": email, "password": PASSWORD})
    body = await response.get_json()
    return {"Authorization": f"Bearer {body['data']['accessToken']}"}


def run(scenario):
    async def wrapper():
        client = app.test_client(use_cookies=False)
        return await scenario(client)

    return asyncio.run(wrapper())


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

def test_register_returns_public_user():
    async def scenario(client):
        response = await client.post(
            "/api/v1/register",
            json={"username": "alice", "email": "Alice@Example.com", "password": PASSWORD},
        )
        return response.status_code, await response.get_json()

    status, body = run(scenario)

    assert status == 201
    assert body["success"] is True
    assert body["data"]["email"] == "alice@example.com"
    assert "password_hash" not in body["data"]
    assert "refresh_token" not in body["data"]


def test_register_rejects_weak_password():
    async def scenario(client):
        response = await client.post(
            "/api/v1/register",
            json={"username": "alice", "email": "alice@example.com", "password": "password"},
        )
        return response.status_code, await response.get_json()

    status, body = run(scenario)

    assert status == 400
    assert body["success"] is False
    assert "at least 8 characters" in body["message"]


def test_register_duplicate_email_conflicts():
    async def scenario(client):
        payload = {"username": "alice", "email": "alice@example.com", "password": PASSWORD}
        await client.post("/api/v1/register", json=payload)
        response = await client.post("/api/v1/register", json=payload)
        return response.status_code

    assert run(scenario) == 409


def test_password_hashing_runs_off_the_event_loop(monkeypatch):
    threads = []

    def recording_hash(password):
        threads.append(threading.get_ident())
        return auth.hash_password(password)

    def recording_verify(password, password_hash):
        threads.append(threading.get_ident())
        return auth.verify_password(password, password_hash)

    monkeypatch.setattr(docchat_main, "hash_password", recording_hash)
    monkeypatch.setattr(docchat_main, "verify_password", recording_verify)

    async def scenario(client):
        await login(client)
        return threading.get_ident()

    loop_thread = run(scenario)

    assert len(threads) == 2
    assert loop_thread not in threads


def test_login_errors():
    async def scenario(client):
        await login(client)
        unknown = await client.post("/api/v1/login", json={"email": "bob@example.com", "password": PASSWORD})
        wrong = await client.post("/api/v1/login", json={"email": "alice@example.com", "password": "Wr0ng!pass"})
        return unknown.status_code, wrong.status_code

    assert run(scenario) == (404, 401)


def test_login_sets_http_only_cookies():
    async def scenario(client):
        await client.post(
            "/api/v1/register",
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD},
        )
        response = await client.post("/api/v1/login", json={"email": "alice@example.com", "password": PASSWORD})
        return response.headers.getlist("Set-Cookie")

    cookies = run(scenario)

    assert any(c.startswith("accessToken=") and "HttpOnly" in c for c in cookies)
    assert any(c.startswith("refreshToken=") and "HttpOnly" in c for c in cookies)


def test_cookie_authenticates_requests():
    async def scenario():
        client = app.test_client()
        await login(client)
        response = await client.get("/api/v1/me")
        return response.status_code, await response.get_json()

    status, body = asyncio.run(scenario())
    assert status == 200
    assert body["data"]["username"] == "alice"


def test_me_requires_auth():
    async def scenario(client):
        missing = await client.get("/api/v1/me")
        garbage = await client.get("/api/v1/me", headers={"Authorization": "Bearer not-a-jwt"})
        return missing.status_code, await missing.get_json(), garbage.status_code

    missing_status, body, garbage_status = run(scenario)

    assert missing_status == 401
    assert body == {"statusCode": 401, "data": None, "message": "Unauthorized request", "success": False}
    assert garbage_status == 401


def test_refresh_token_rotation_and_logout():
    async def scenario(client):
        await client.post(
            "/api/v1/register",
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD},
        )
        login_response = await client.post("/api/v1/login", json={"email": "alice@example.com", "password": PASSWORD})
        tokens = (await login_response.get_json())["data"]
        old_refresh = tokens["refreshToken"]

        rotated = await client.post("/api/v1/refresh-token", json={"refreshToken": old_refresh})
        new_tokens = (await rotated.get_json())["data"]

        reused = await client.post("/api/v1/refresh-token", json={"refreshToken": old_refresh})

        headers = {"Authorization": f"Bearer {new_tokens['accessToken']}"}
        logout = await client.post("/api/v1/logout", headers=headers)
        after_logout = await client.post("/api/v1/refresh-token", json={"refreshToken": new_tokens["refreshToken"]})

        return rotated.status_code, reused.status_code, logout.status_code, after_logout.status_code

    assert run(scenario) == (200, 401, 200, 401)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def chat_message(msg_id: str, msg_type: str, content: str) -> dict:
    return {
        "id": msg_id,
        "type": msg_type,
        "content": content,
        "timestamp": "2026-03-01T12:00:00.000Z",
    }


def test_conversation_lifecycle():
    async def scenario(client):
        headers = await login(client)
        results = {}

        saved = await client.post(
            "/api/v1/chat/save",
            headers=headers,
            json={"id": "conv-1", "messages": [chat_message("m1", "user", "Explain solar panel efficiency")]},
        )
        results["saved"] = await saved.get_json()

        listed = await client.get("/api/v1/chat/conversations", headers=headers)
        results["listed"] = await listed.get_json()

        renamed = await client.patch(
            "/api/v1/chat/conversation/conv-1/title", headers=headers, json={"title": "Solar"}
        )
        results["renamed"] = await renamed.get_json()

        appended = await client.post(
            "/api/v1/chat/conversation/conv-1/message",
            headers=headers,
            json={"message": chat_message("m2", "ai", "Around twenty percent.")},
        )
        results["appended"] = await appended.get_json()

        deleted = await client.delete("/api/v1/chat/conversation/conv-1", headers=headers)
        results["deleted"] = await deleted.get_json()

        missing = await client.get("/api/v1/chat/conversation/conv-1", headers=headers)
        results["missing_status"] = missing.status_code
        return results

    results = run(scenario)

    assert results["saved"]["data"]["title"] == "Explain Solar Panel"
    assert results["saved"]["data"]["messages"][0]["fileName"] == ""
    assert [c["id"] for c in results["listed"]["data"]] == ["conv-1"]
    assert results["renamed"]["data"]["title"] == "Solar"
    assert [m["type"] for m in results["appended"]["data"]["messages"]] == ["user", "ai"]
    assert results["deleted"]["data"] == {}
    assert results["missing_status"] == 404


def test_conversation_validation_errors():
    async def scenario(client):
        headers = await login(client)
        no_id = await client.post("/api/v1/chat/save", headers=headers, json={"messages": []})
        bad_type = await client.post(
            "/api/v1/chat/save",
            headers=headers,
            json={"id": "c", "messages": [chat_message("m1", "robot", "hi")]},
        )
        no_title = await client.patch("/api/v1/chat/conversation/c/title", headers=headers, json={})
        no_message = await client.post("/api/v1/chat/conversation/c/message", headers=headers, json={})
        missing = await client.patch(
            "/api/v1/chat/conversation/nope/title", headers=headers, json={"title": "x"}
        )
        return [r.status_code for r in (no_id, bad_type, no_title, no_message, missing)]

    assert run(scenario) == [400, 400, 400, 400, 404]


def test_conversations_are_isolated_between_users():
    async def scenario(client):
        alice = await login(client, "alice@example.com")
        bob = await login(client, "bob@example.com")

        await client.post(
            "/api/v1/chat/save",
            headers=alice,
            json={"id": "conv-a", "messages": [chat_message("m1", "user", "alice secret")]},
        )
        peek = await client.get("/api/v1/chat/conversation/conv-a", headers=bob)
        hijack = await client.post(
            "/api/v1/chat/save",
            headers=bob,
            json={"id": "conv-a", "messages": [chat_message("m1", "user", "bob was here")]},
        )
        bob_list = await client.get("/api/v1/chat/conversations", headers=bob)
        return peek.status_code, hijack.status_code, (await bob_list.get_json())["data"]

    peek, hijack, bob_list = run(scenario)

    assert peek == 404
    assert hijack == 409
    assert bob_list == []


# ---------------------------------------------------------------------------
# Knowledge base and questions
# ---------------------------------------------------------------------------

def test_upload_requires_file(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/upload", headers=headers, form={})
        return response.status_code, await response.get_json()

    status, body = run(scenario)
    assert status == 400
    assert body == {"error": "No file uploaded. Please upload a PDF file."}


def test_upload_rejects_unsupported_type(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/upload", headers=headers, files=pdf_upload("notes.txt"))
        return response.status_code

    assert run(scenario) == 400


def test_upload_pdf_returns_numbered_chunks(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["Solar panels convert light. " * 40]))

    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/upload", headers=headers, files=pdf_upload())
        documents = await client.get("/api/v1/documents", headers=headers)
        return response.status_code, await response.get_json(), await documents.get_json()

    status, body, documents = run(scenario)

    assert status == 200
    assert body["message"] == "PDF uploaded and processed successfully."
    assert body["blank"] is False
    assert [c["id"] for c in body["chunks"]] == list(range(1, len(body["chunks"]) + 1))
    assert body["chunks"][0]["metadata"]["source"] == "report.pdf"
    assert documents["documents"][0]["source"] == "report.pdf"
    assert documents["documents"][0]["chunks"] == len(body["chunks"])


def test_upload_blank_scan_is_flagged(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["", "  "]))
    monkeypatch.setattr(loaders, "convert_from_path", lambda path, dpi: [])

    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/upload", headers=headers, files=pdf_upload("scan.pdf"))
        return response.status_code, await response.get_json()

    status, body = run(scenario)
    assert status == 200
    assert body["blank"] is True
    assert body["chunks"] == []


def test_upload_unreadable_pdf(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        response = await client.post(
            "/api/v1/upload", headers=headers, files=pdf_upload("broken.pdf", b"not a pdf")
        )
        return response.status_code

    assert run(scenario) == 422


def test_upload_requires_auth():
    async def scenario(client):
        response = await client.post("/api/v1/upload", files=pdf_upload())
        return response.status_code

    assert run(scenario) == 401


def test_upload_keeps_non_ascii_file_name(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["Квартальный отчёт о продажах. " * 20]))

    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/upload", headers=headers, files=pdf_upload("отчёт.pdf"))
        documents = await client.get("/api/v1/documents", headers=headers)
        return response.status_code, await response.get_json(), await documents.get_json()

    status, body, documents = run(scenario)

    assert status == 200
    assert body["chunks"][0]["metadata"]["source"] == "отчёт.pdf"
    assert documents["documents"][0]["source"] == "отчёт.pdf"
    assert list(config.UPLOAD_DIR.iterdir()) == []


def test_upload_strips_client_directories(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["Quarterly numbers. " * 20]))

    async def scenario(client):
        headers = await login(client)
        response = await client.post(
            "/api/v1/upload", headers=headers, files=pdf_upload("C:\\Users\\jane\\q3.PDF")
        )
        return response.status_code, await response.get_json()

    status, body = run(scenario)
    assert status == 200
    assert body["chunks"][0]["metadata"]["source"] == "q3.PDF"


def test_oversized_body_returns_json_413(fake_ollama, monkeypatch):
    async def scenario(client):
        headers = await login(client)
        monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 64)
        response = await client.post(
            "/api/v1/upload", headers=headers, files=pdf_upload(data=b"%PDF-1.4 " + b"x" * 1024)
        )
        return response.status_code, await response.get_json()

    status, body = run(scenario)
    assert status == 413
    assert body == {"error": f"File too large (max {config.MAX_UPLOAD_MB} MB)"}


def test_load_data(fake_ollama, monkeypatch):
    pages = {
        "/": '<ul><li><a href="/intro">Intro</a></li></ul>',
        "/intro": "<p>The intro page explains onboarding.</p>",
    }

    def handler(request):
        html = pages.get(request.url.path)
        if html is None:
            return httpx.Response(404)
        return httpx.Response(200, text=html)

    monkeypatch.setattr(ingest_pipeline, "web_loader", WebLoader(transport=httpx.MockTransport(handler)))

    async def scenario(client):
        headers = await login(client)
        ok = await client.post("/api/v1/load-data", headers=headers, json={"url": "https://docs.test/"})
        bad = await client.post("/api/v1/load-data", headers=headers, json={"url": "ftp://docs.test/"})
        down = await client.post("/api/v1/load-data", headers=headers, json={"url": "https://docs.test/gone"})
        return ok.status_code, await ok.get_json(), bad.status_code, down.status_code

    ok_status, body, bad_status, down_status = run(scenario)

    assert ok_status == 200
    assert body["pages"] == ["https://docs.test/intro"]
    assert body["chunks_stored"] == 1
    assert bad_status == 400
    assert down_status == 502


def test_query_validation(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        missing = await client.post("/api/v1/query", headers=headers, json={})
        blank = await client.post("/api/v1/query", headers=headers, json={"message": "   "})
        too_long = await client.post("/api/v1/query", headers=headers, json={"message": "x" * 2001})
        return missing.status_code, await missing.get_json(), blank.status_code, too_long.status_code

    missing_status, body, blank_status, long_status = run(scenario)

    assert missing_status == 400
    assert body == {"error": "Message is required"}
    assert blank_status == 400
    assert long_status == 400


def test_query_rejects_malformed_fields(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        numeric = await client.post("/api/v1/query", headers=headers, json={"message": 42})
        bad_conversation = await client.post(
            "/api/v1/query", headers=headers, json={"message": "Hello?", "conversation_id": ["x"]}
        )
        return (
            numeric.status_code,
            await numeric.get_json(),
            bad_conversation.status_code,
            await bad_conversation.get_json(),
        )

    numeric_status, numeric_body, conv_status, conv_body = run(scenario)

    assert numeric_status == 400
    assert numeric_body == {"error": "Message is required"}
    assert conv_status == 400
    assert conv_body["error"].startswith("conversation_id")
    assert fake_ollama.chat_calls == []


def test_query_answers_from_own_documents(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["The office opens at nine in the morning."]))
    fake_ollama.reply = "It opens at nine."

    async def scenario(client):
        alice = await login(client, "alice@example.com")
        bob = await login(client, "bob@example.com")
        await client.post("/api/v1/upload", headers=alice, files=pdf_upload("hours.pdf"))

        alice_answer = await client.post("/api/v1/query", headers=alice, json={"message": "When does the office open?"})
        alice_prompt = fake_ollama.chat_calls[-1][0]["content"]
        bob_answer = await client.post("/api/v1/query", headers=bob, json={"message": "When does the office open?"})
        bob_prompt = fake_ollama.chat_calls[-1][0]["content"]
        return await alice_answer.get_json(), alice_prompt, await bob_answer.get_json(), bob_prompt

    alice_body, alice_prompt, bob_body, bob_prompt = run(scenario)

    assert alice_body["response"] == "It opens at nine."
    assert alice_body["sources"][0]["source"] == "hours.pdf (page 1)"
    assert "opens at nine in the morning" in alice_prompt
    assert bob_body["sources"] == []
    assert "opens at nine in the morning" not in bob_prompt


def test_query_includes_conversation_history(fake_ollama):
    async def scenario(client):
        headers = await login(client)
        await client.post(
            "/api/v1/chat/save",
            headers=headers,
            json={"id": "conv-1", "messages": [
                chat_message("m1", "user", "What is the refund policy?"),
                chat_message("m2", "ai", "Refunds within 30 days."),
                chat_message("m3", "user", "Does it cover sale items?"),
            ]},
        )
        await client.post(
            "/api/v1/query",
            headers=headers,
            json={"message": "Does it cover sale items?", "conversation_id": "conv-1"},
        )
        return fake_ollama.chat_calls[-1]

    messages = run(scenario)

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "What is the refund policy?"
    assert messages[-1]["content"] == "Does it cover sale items?"


def test_query_llm_failure(fake_ollama, monkeypatch):
    async def broken_chat(messages, model=None, temperature=None):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(ollama_client, "chat", broken_chat)

    async def scenario(client):
        headers = await login(client)
        response = await client.post("/api/v1/query", headers=headers, json={"message": "What is this?"})
        return response.status_code, await response.get_json()

    status, body = run(scenario)
    assert status == 500
    assert body == {"error": "Failed to process the query"}


def test_delete_documents(fake_ollama, monkeypatch):
    monkeypatch.setattr(loaders, "PdfReader", fake_reader(["Some text worth keeping."]))

    async def scenario(client):
        headers = await login(client)
        await client.post("/api/v1/upload", headers=headers, files=pdf_upload())
        deleted = await client.delete("/api/v1/documents", headers=headers)
        listed = await client.get("/api/v1/documents", headers=headers)
        return await deleted.get_json(), await listed.get_json()

    deleted, listed = run(scenario)
    assert deleted["deleted"] == 1
    assert listed["documents"] == []
    assert db.count_chunks() == 0


# ---------------------------------------------------------------------------
# Health and pages
# ---------------------------------------------------------------------------

def test_health_probes(fake_ollama):
    async def scenario(client):
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")
        fake_ollama.models = []
        not_ready = await client.get("/health/ready")
        return live.status_code, ready.status_code, not_ready.status_code, await not_ready.get_json()

    live, ready, not_ready, body = run(scenario)

    assert (live, ready, not_ready) == (200, 200, 503)
    assert body["ollama"] is True
    assert body["models"] is False


def test_index_page_renders():
    async def scenario(client):
        response = await client.get("/")
        return response.status_code, await response.get_data(as_text=True)

    status, html = run(scenario)
    assert status == 200
    assert "DocChat" in html


def test_unknown_route_is_json_404():
    async def scenario(client):
        response = await client.get("/no/such/route")
        return response.status_code, await response.get_json()

    assert run(scenario) == (404, {"error": "Not found"})
