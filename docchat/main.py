"""Main Quart application for DocChat."""
import asyncio
import sqlite3
import uuid
from pathlib import Path

import structlog
from pydantic import ValidationError
from quart import Quart, g, jsonify, render_template, request
from quart_cors import cors
from werkzeug.utils import secure_filename

from docchat import config, db
from docchat.auth import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    login_required,
    public_user,
    verify_password,
)
from docchat.errors import ApiError, api_response, first_validation_message
from docchat.llm_client import ollama_client
from docchat.log import configure_logging
from docchat.memory import ConversationConflict, ConversationManager
from docchat.rag.assistant import RAGAssistant
from docchat.rag.ingest import IngestPipeline
from docchat.rag.loaders import DocumentLoadError, UnsupportedFileType, is_supported
from docchat.rag.web import WebLoadError
from docchat.schemas import (
    AddMessageRequest,
    LoadDataRequest,
    LoginRequest,
    QueryRequest,
    RegisterRequest,
    SaveConversationRequest,
    TitleUpdateRequest,
)

configure_logging()

logger = structlog.get_logger()

# A single short chunk is what an image-only page yields when OCR finds nothing
BLANK_CHUNK_CHARS = 50

app = Quart(__name__, template_folder=str(config.TEMPLATES_DIR))
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_MB * 1024 * 1024
app = cors(app, allow_origin=config.CORS_ORIGINS, allow_credentials=True)

conversation_manager = ConversationManager()
ingest_pipeline = IngestPipeline()
assistant = RAGAssistant()


@app.before_serving
async def startup():
    db.init_database()
    logger.info("app_started", chat_model=config.CHAT_MODEL, data_dir=str(config.DATA_DIR))


def _validate(model, data):
    """Validate a JSON body, turning pydantic errors into a 400 ApiError."""
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        raise ApiError(400, first_validation_message(e) or "Invalid request body")


def _set_auth_cookies(response, access_token: str, refresh_token: str):
    for key, value in ((ACCESS_TOKEN_COOKIE, access_token), (REFRESH_TOKEN_COOKIE, refresh_token)):
        response.set_cookie(
            key,
            value,
            httponly=True,
            secure=config.COOKIE_SECURE,
            samesite="Lax",
        )
    return response


def _issue_tokens(user_id: str):
    access_token = create_access_token(user_id)
    refresh_token = create_refresh_token(user_id)
    db.set_refresh_token(user_id, refresh_token)
    return access_token, refresh_token


@app.route("/")
async def index():
    """Render the chat interface."""
    return await render_template(
        "chat.html",
        static_version=config.STATIC_VERSION,
        chat_model=config.CHAT_MODEL,
        max_upload_mb=config.MAX_UPLOAD_MB,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@app.route("/api/v1/register", methods=["POST"])
async def register():
    """Create an account.

    Expects JSON body:
    {
        "username": "jane",
        "email": "jane@example.com",
        "password": "Str0ng!pass"
    }
    """
    body = _validate(RegisterRequest, await request.get_json(silent=True))

    if db.get_user_by_email(body.email):
        raise ApiError(409, "User with this email already exists")

    try:
        user = db.create_user(
            str(uuid.uuid4()),
            body.username,
            body.email,
            await asyncio.to_thread(hash_password, body.password),
        )
    except sqlite3.IntegrityError:
        raise ApiError(409, "User with this email already exists")

    return jsonify(api_response(public_user(user), "User registered successfully", 201)), 201


@app.route("/api/v1/login", methods=["POST"])
async def login():
    """Log in and receive access and refresh tokens.

    Tokens are set as httpOnly cookies and also returned in the body for
    clients that send an Authorization header instead.
    """
    body = _validate(LoginRequest, await request.get_json(silent=True))

    user = db.get_user_by_email(body.email)
    if not user:
        raise ApiError(404, "User does not exist")

    # bcrypt is slow on purpose, keep it off the event loop
    if not await asyncio.to_thread(verify_password, body.password, user["password_hash"]):
        logger.warning("login_failed", user_id=user["id"])
        raise ApiError(401, "Invalid user credentials")

    access_token, refresh_token = _issue_tokens(user["id"])
    logger.info("user_logged_in", user_id=user["id"])

    response = jsonify(api_response(
        {
            "user": public_user(user),
            "accessToken": access_token,
            "refreshToken": refresh_token,
        },
        "User logged in successfully",
    ))
    return _set_auth_cookies(response, access_token, refresh_token)


@app.route("/api/v1/logout", methods=["POST"])
@login_required
async def logout():
    db.set_refresh_token(g.user["id"], None)
    logger.info("user_logged_out", user_id=g.user["id"])

    response = jsonify(api_response({}, "User logged out"))
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    response.delete_cookie(REFRESH_TOKEN_COOKIE)
    return response


@app.route("/api/v1/refresh-token", methods=["POST"])
async def refresh_token():
    """Rotate tokens using the refresh token from the cookie or the body."""
    data = await request.get_json(silent=True) or {}
    incoming = request.cookies.get(REFRESH_TOKEN_COOKIE) or data.get("refreshToken")
    if not incoming:
        raise ApiError(401, "Unauthorized request")

    claims = decode_token(incoming, "refresh")
    user = db.get_user_by_id(claims["sub"])
    if not user:
        raise ApiError(401, "Invalid refresh token")
    if incoming != user["refresh_token"]:
        raise ApiError(401, "Refresh token is expired or used")

    access_token, new_refresh_token = _issue_tokens(user["id"])

    response = jsonify(api_response(
        {"accessToken": access_token, "refreshToken": new_refresh_token},
        "Access token refreshed",
    ))
    return _set_auth_cookies(response, access_token, new_refresh_token)


@app.route("/api/v1/me", methods=["GET"])
@login_required
async def me():
    return jsonify(api_response(g.user, "Current user fetched successfully"))


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.route("/api/v1/chat/save", methods=["POST"])
@login_required
async def save_chat():
    """Create or overwrite a conversation.

    Expects JSON body:
    {
        "id": "client-generated-id",
        "title": "optional title",
        "messages": [{"id", "type", "content", "fileName", "url", "timestamp"}, ...]
    }
    """
    data = await request.get_json(silent=True) or {}
    if not data.get("id") or "messages" not in data:
        raise ApiError(400, "Conversation ID and messages are required")

    body = _validate(SaveConversationRequest, data)

    try:
        conversation = conversation_manager.save_conversation(
            g.user["id"],
            body.id,
            [message.to_record() for message in body.messages],
            title=body.title,
        )
    except ConversationConflict as e:
        raise ApiError(409, str(e))

    return jsonify(api_response(conversation, "Chat saved successfully"))


@app.route("/api/v1/chat/conversations", methods=["GET"])
@login_required
async def list_conversations():
    conversations = conversation_manager.list_conversations(g.user["id"])
    return jsonify(api_response(conversations, "Conversations fetched successfully"))


@app.route("/api/v1/chat/conversation/<conversation_id>", methods=["GET"])
@login_required
async def get_conversation(conversation_id: str):
    conversation = conversation_manager.get_conversation(g.user["id"], conversation_id)
    if not conversation:
        raise ApiError(404, "Conversation not found")
    return jsonify(api_response(conversation, "Conversation fetched successfully"))


@app.route("/api/v1/chat/conversation/<conversation_id>", methods=["DELETE"])
@login_required
async def delete_conversation(conversation_id: str):
    if not conversation_manager.delete_conversation(g.user["id"], conversation_id):
        raise ApiError(404, "Conversation not found")
    return jsonify(api_response({}, "Conversation deleted successfully"))


@app.route("/api/v1/chat/conversation/<conversation_id>/title", methods=["PATCH"])
@login_required
async def update_conversation_title(conversation_id: str):
    data = await request.get_json(silent=True) or {}
    if not data.get("title"):
        raise ApiError(400, "Title is required")

    body = _validate(TitleUpdateRequest, data)
    conversation = conversation_manager.update_title(g.user["id"], conversation_id, body.title)
    if not conversation:
        raise ApiError(404, "Conversation not found")
    return jsonify(api_response(conversation, "Title updated successfully"))


@app.route("/api/v1/chat/conversation/<conversation_id>/message", methods=["POST"])
@login_required
async def add_conversation_message(conversation_id: str):
    data = await request.get_json(silent=True) or {}
    if not data.get("message"):
        raise ApiError(400, "Message is required")

    body = _validate(AddMessageRequest, data)
    conversation = conversation_manager.add_message(
        g.user["id"], conversation_id, body.message.to_record()
    )
    if not conversation:
        raise ApiError(404, "Conversation not found")
    return jsonify(api_response(conversation, "Message added successfully"))


# ---------------------------------------------------------------------------
# Knowledge base and questions
# ---------------------------------------------------------------------------

@app.route("/api/v1/upload", methods=["POST"])
@login_required
async def upload():
    """Ingest an uploaded PDF (or image) into the user's knowledge base.

    Expects multipart form data with the file in the "pdf" field.

    Returns JSON:
    {
        "message": "PDF uploaded and processed successfully.",
        "chunks": [{"id": 1, "content": "...", "metadata": {...}}, ...],
        "blank": false
    }
    """
    files = await request.files
    upload_file = files.get("pdf")
    if upload_file is None or not upload_file.filename:
        return jsonify({"error": "No file uploaded. Please upload a PDF file."}), 400

    # Shown as the chunk source; browsers on Windows may send a full path
    filename = Path(upload_file.filename.replace("\\", "/")).name
    if not is_supported(Path(filename)):
        return jsonify({"error": "Unsupported file type. Please upload a PDF or image file."}), 400

    user_id = g.user["id"]
    # Stored under a uuid, only the suffix comes from the client
    saved_path = config.UPLOAD_DIR / secure_filename(f"{uuid.uuid4().hex}{Path(filename).suffix.lower()}")

    try:
        await upload_file.save(saved_path)
        chunks = await ingest_pipeline.ingest_file(saved_path, user_id, source_name=filename)

    except UnsupportedFileType as e:
        return jsonify({"error": str(e)}), 400

    except DocumentLoadError as e:
        logger.warning("upload_unreadable", filename=filename, error=str(e))
        return jsonify({"error": str(e)}), 422

    except Exception as e:
        logger.error(
            "upload_processing_failed",
            filename=filename,
            error=str(e),
            error_type=type(e).__name__,
        )
        return jsonify({"error": "Error processing the PDF"}), 500

    blank = not chunks or (len(chunks) == 1 and len(chunks[0].content.strip()) < BLANK_CHUNK_CHARS)

    logger.info("upload_processed", filename=filename, user_id=user_id, chunks=len(chunks), blank=blank)

    return jsonify({
        "message": "PDF uploaded and processed successfully.",
        "chunks": [
            {"id": i + 1, "content": chunk.content, "metadata": chunk.metadata}
            for i, chunk in enumerate(chunks)
        ],
        "blank": blank,
    })


@app.route("/api/v1/load-data", methods=["POST"])
@login_required
async def load_data():
    """Crawl a web page (and the pages it links to) into the knowledge base.

    Expects JSON body:
    {
        "url": "https://example.com/docs"
    }
    """
    data = await request.get_json(silent=True) or {}
    try:
        body = LoadDataRequest.model_validate(data)
    except ValidationError as e:
        return jsonify({"error": first_validation_message(e) or "A valid URL is required"}), 400

    user_id = g.user["id"]

    try:
        result = await ingest_pipeline.ingest_url(body.url, user_id)

    except WebLoadError as e:
        logger.warning("load_data_fetch_failed", url=body.url, error=str(e))
        return jsonify({"error": str(e)}), 502

    except Exception as e:
        logger.error(
            "load_data_failed",
            url=body.url,
            error=str(e),
            error_type=type(e).__name__,
        )
        return jsonify({"error": "Failed to load data from URL"}), 500

    return jsonify({
        "message": "Data loaded and processed successfully.",
        "pages": result["pages"],
        "chunks_stored": len(result["chunks"]),
    })


@app.route("/api/v1/query", methods=["POST"])
@login_required
async def query():
    """Answer a question from the user's documents.

    Expects JSON body:
    {
        "message": "question text",
        "conversation_id": "optional-conversation-id"
    }

    Returns JSON:
    {
        "response": "assistant response text",
        "sources": [...]
    }
    """
    data = await request.get_json(silent=True) or {}
    try:
        body = QueryRequest.model_validate(data)
    except ValidationError as e:
        if all(err["loc"][:1] == ("conversation_id",) for err in e.errors()):
            return jsonify({"error": first_validation_message(e)}), 400
        return jsonify({"error": "Message is required"}), 400

    message = body.message
    if not message:
        return jsonify({"error": "Message is required"}), 400
    if len(message) > config.MAX_MESSAGE_LENGTH:
        return jsonify({
            "error": f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)"
        }), 400

    user_id = g.user["id"]
    conversation_id = body.conversation_id

    logger.info(
        "query_received",
        user_id=user_id,
        conversation_id=conversation_id,
        message_length=len(message),
    )

    try:
        history = []
        if conversation_id:
            history = conversation_manager.format_history(
                user_id, conversation_id, pending_question=message
            )

        reply = await assistant.answer(message, user_id, history)

    except Exception as e:
        logger.error("query_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to process the query"}), 500

    return jsonify({"response": reply.response, "sources": reply.sources})


@app.route("/api/v1/documents", methods=["GET"])
@login_required
async def list_documents():
    sources = db.list_sources(g.user["id"])
    return jsonify({"documents": sources})


@app.route("/api/v1/documents", methods=["DELETE"])
@login_required
async def delete_documents():
    try:
        deleted = await ingest_pipeline.delete_user_documents(g.user["id"])
    except Exception as e:
        logger.error("documents_delete_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to delete documents"}), 500
    return jsonify({"message": "Knowledge base cleared.", "deleted": deleted})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests.

    Checks:
    - Ollama service is reachable
    - Required models are available
    """
    checks = {
        "status": "healthy",
        "ollama": False,
        "models": False,
    }

    try:
        models = await ollama_client.list_models()
        checks["ollama"] = True

        missing = [m for m in (config.CHAT_MODEL, config.EMBEDDING_MODEL) if m not in models]
        if missing:
            checks["status"] = "unhealthy"
            checks["error"] = f"Missing models: {', '.join(missing)}"
        else:
            checks["models"] = True

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503


@app.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@app.errorhandler(ApiError)
async def handle_api_error(error: ApiError):
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(404)
async def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(413)
async def too_large(error):
    return jsonify({"error": f"File too large (max {config.MAX_UPLOAD_MB} MB)"}), 413


@app.errorhandler(500)
async def internal_error(error):
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    # For development - use hypercorn via scripts/dev.sh in production
    app.run(host="0.0.0.0", port=5000, debug=True)
