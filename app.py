# ============================================================================
# IMPORTS
# ============================================================================

# Standard Library
import logging

# Third-Party: Flask & Extensions
from flask import Flask, request, jsonify, session
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

# Third-Party: Environment & Configuration
from dotenv import load_dotenv
load_dotenv()

# Third-Party: Firebase
import firebase_admin
from firebase_admin import credentials, auth as firebase_auth

# Local
from config import Settings
from db import open_database
from errors import ApiError, BadRequest, Forbidden, NotFound, Unauthorized
from schemas import (
    CreateProblemRequest,
    ExtractStepsRequest,
    GuidingQuestionsRequest,
    LoginRequest,
    ProblemIdRequest,
    StepsRevealedRequest,
    hint_request_adapter,
)
from storage import ImageStore
from tutor import Tutor


# ============================================================================
# FLASK APP SETUP
# ============================================================================

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("stepwise")

app = Flask(__name__)
CORS(app, supports_credentials=True)

app.secret_key = settings.secret_key
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=settings.cookie_secure,
)


# ============================================================================
# FIREBASE ADMIN SETUP
# ============================================================================

try:
    cred = credentials.Certificate(settings.firebase_credentials)
    options = {"storageBucket": settings.storage_bucket} if settings.storage_bucket else None
    firebase_admin.initialize_app(cred, options)
    logger.info("Firebase Admin connected")
except Exception as e:
    logger.warning("Firebase Admin connection failed: %s", e)


# ============================================================================
# SERVICES
# ============================================================================

database = open_database(settings)
tutor = Tutor(api_key=settings.gemini_api_key, model=settings.gemini_model)
images = ImageStore(settings.storage_bucket)


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def validation_message(e: ValidationError) -> str:
    err = e.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    return f"{where}: {err.get('msg')}" if where else str(err.get("msg"))


def parse_body(model):
    """Validate the JSON body against a pydantic model; schema violations are 400s."""
    data = request.get_json(silent=True) or {}
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise BadRequest(validation_message(e))


def current_user():
    """The signed-in user, or None.

    Without a database the login handler keeps a token-derived user in the
    session, which is returned instead.
    """
    open_id = session.get("open_id")
    if not open_id:
        return None
    user = database.get_user_by_open_id(open_id)
    if user:
        return user
    return session.get("user")


def require_user():
    user = current_user()
    if not user:
        raise Unauthorized("Please login")
    return user


def require_admin():
    user = require_user()
    if user.get("role") != "admin":
        raise Forbidden("You do not have required permission")
    return user


# ============================================================================
# ROUTES - SYSTEM
# ============================================================================

@app.route("/api/ping")
def ping():
    """Health check."""
    return jsonify(
        message="Stepwise backend is running",
        database="online" if database.online else "offline",
    )


# ============================================================================
# ROUTES - AUTHENTICATION
# ============================================================================

@app.post("/api/auth.login")
def login():
    """Verify a Firebase ID token, upsert the user and start a session."""
    body = parse_body(LoginRequest)
    try:
        decoded = firebase_auth.verify_id_token(body.idToken)
    except firebase_auth.InvalidIdTokenError as e:
        logger.info("Rejected ID token: %s", e)
        raise Unauthorized("Invalid ID token")

    open_id = decoded.get("uid")
    login_method = (decoded.get("firebase") or {}).get("sign_in_provider")
    user = database.upsert_user(
        open_id,
        name=decoded.get("name"),
        email=decoded.get("email"),
        login_method=login_method,
    )
    session.clear()
    session["open_id"] = open_id
    if user is None:
        # No DB available; keep the token identity in the session
        is_owner = bool(settings.owner_open_id) and open_id == settings.owner_open_id
        user = {
            "id": None,
            "openId": open_id,
            "name": decoded.get("name"),
            "email": decoded.get("email"),
            "loginMethod": login_method,
            "role": "admin" if is_owner else "user",
        }
        session["user"] = user
    logger.info("User %s signed in", open_id)
    return jsonify(user)


@app.get("/api/auth.me")
def me():
    return jsonify(current_user())


@app.post("/api/auth.logout")
def logout():
    session.clear()
    return jsonify(success=True)


# ============================================================================
# ROUTES - PROBLEMS
# ============================================================================

@app.post("/api/problem.create")
def create_problem():
    """Admin only. Persist an extracted (and reviewed) problem."""
    user = require_admin()
    body = parse_body(CreateProblemRequest)
    problem_id = database.create_problem(
        user_id=user["id"],
        title=body.title,
        problem_text=body.problemText,
        problem_text_en=body.problemTextEn,
        problem_image_url=body.problemImageUrl,
        problem_image_key=body.problemImageKey,
        solution_image_url=body.solutionImageUrl,
        solution_image_key=body.solutionImageKey,
        steps=[s.model_dump() for s in body.steps],
        conditions=body.conditions,
    )
    logger.info("Problem %s created by %s with %d steps", problem_id, user["openId"], len(body.steps))
    return jsonify(id=problem_id)


@app.get("/api/problem.list")
def list_problems():
    return jsonify(database.list_problems())


@app.get("/api/problem.getById")
def get_problem():
    raw_id = request.args.get("id")
    if raw_id is None:
        raise BadRequest("id required")
    try:
        problem_id = int(raw_id)
    except ValueError:
        raise BadRequest("id must be an integer")
    problem = database.get_problem_by_id(problem_id)
    if not problem:
        raise NotFound("Problem not found")
    return jsonify(problem)


@app.post("/api/problem.extractSteps")
def extract_steps():
    """Read problem text, conditions and steps out of the uploaded images."""
    require_user()
    body = parse_body(ExtractStepsRequest)
    return jsonify(tutor.extract_steps(body.problemImageUrl, body.solutionImageUrl))


@app.post("/api/problem.hint")
def hint():
    """Public. Body: {steps, conditions?, mode, selectedStepId?, selectedText?, selectedCondition?}"""
    data = request.get_json(silent=True) or {}
    try:
        req = hint_request_adapter.validate_python(data)
    except ValidationError as e:
        raise BadRequest(validation_message(e))
    return jsonify(hint=tutor.hint(req))


@app.post("/api/problem.generateGuidingQuestions")
def generate_guiding_questions():
    body = parse_body(GuidingQuestionsRequest)
    return jsonify(questions=tutor.guiding_questions(body))


# ============================================================================
# ROUTES - PROGRESS
# ============================================================================

@app.post("/api/problem.recordView")
def record_view():
    user = require_user()
    body = parse_body(ProblemIdRequest)
    database.record_view(user["openId"], body.problemId)
    return jsonify(success=True)


@app.post("/api/problem.recordHint")
def record_hint():
    user = require_user()
    body = parse_body(ProblemIdRequest)
    database.record_hint(user["openId"], body.problemId)
    return jsonify(success=True)


@app.post("/api/problem.recordConditionClick")
def record_condition_click():
    user = require_user()
    body = parse_body(ProblemIdRequest)
    database.record_condition_click(user["openId"], body.problemId)
    return jsonify(success=True)


@app.post("/api/problem.recordStepsRevealed")
def record_steps_revealed():
    user = require_user()
    body = parse_body(StepsRevealedRequest)
    database.record_steps_revealed(user["openId"], body.problemId, body.count)
    return jsonify(success=True)


@app.post("/api/problem.recordSolutionView")
def record_solution_view():
    user = require_user()
    body = parse_body(ProblemIdRequest)
    database.record_solution_view(user["openId"], body.problemId)
    return jsonify(success=True)


@app.get("/api/problem.getProgress")
def get_progress():
    """Totals across every problem the current user has touched."""
    user = require_user()
    return jsonify(database.get_progress_stats(user["openId"]))


# ============================================================================
# ROUTES - UPLOAD
# ============================================================================

UPLOAD_FIELDS = (
    ("problemImage", "problem"),
    ("solutionImage", "solution"),
)


@app.post("/api/upload-images")
def upload_images():
    """Store the problem and/or solution image and return their public URLs and keys."""
    result = {}
    try:
        for field, kind in UPLOAD_FIELDS:
            file = request.files.get(field)
            if file is None:
                continue
            data = file.read()
            if not data:
                continue
            url, key = images.put_upload(kind, data, file.mimetype)
            result[f"{kind}ImageUrl"] = url
            result[f"{kind}ImageKey"] = key
    except Exception:
        logger.exception("Upload error")
        return jsonify(error="Upload failed"), 500
    return jsonify(result)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.errorhandler(ApiError)
def handle_api_error(e):
    return jsonify(error=e.to_dict()), e.status


@app.errorhandler(404)
def not_found(e):
    return jsonify(error={"code": "NOT_FOUND", "message": f"Not Found - {e}"}), 404


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        code = (e.name or "error").upper().replace(" ", "_")
        return jsonify(error={"code": code, "message": e.description}), e.code
    logger.exception("Unhandled error on %s", request.path)
    return jsonify(error={"code": "INTERNAL_SERVER_ERROR", "message": str(e)}), 500


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    app.run(host="127.0.0.1", port=settings.port, debug=True)
