# app.py
from contextlib import asynccontextmanager
from functools import wraps
from flask import Flask, request, jsonify, make_response, current_app
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv
from collections import defaultdict
import asyncio
import time
import threading
import secrets
import jwt
import os
import uuid

from utils import APIError, safe_print, debug_print, ENABLE_DEBUG_LOGS
from live_events import parse_webhook_payload
from notifications import process_score_change, webhook_summary
from dispatch import (
    MemoryIdempotencyStore,
    NotificationDispatcher,
    OneSignalSender,
    SupabaseSendLog,
    get_environment,
)
from data_store import SupabaseStore
from standings import (
    FORM_WINDOWS,
    compute_gw_table,
    compute_league_table,
    gameweek_deadlines,
    gw_results_summary,
    gw_winners,
    index_picks,
    leaderboard_for_period,
    league_points_for_gw,
    outcomes_from_live,
    outcomes_from_results,
    relevant_gameweeks,
    resolve_league_start_gw,
)

# --------------------------------------------------------
# ----------------- Environment variables  ---------------
# --------------------------------------------------------

# load .env
load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"
DISABLE_RATE_LIMITS = os.getenv("DISABLE_RATE_LIMITS", "0") == "1"

# ✅ Healthcheck secret (optional; if set, /health requires it)
HEALTHCHECK_TOKEN = os.getenv("HEALTHCHECK_TOKEN")

# ✅ Shared secret the database webhook sends in X-Webhook-Secret (optional)
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET")

# ✅ Push provider
ONESIGNAL_APP_ID = os.getenv("ONESIGNAL_APP_ID")
ONESIGNAL_REST_API_KEY = os.getenv("ONESIGNAL_REST_API_KEY")
NOTIFICATION_ENV = get_environment(os.getenv("NOTIFICATION_ENV"))

# "supabase" (shared notification_send_log) or "memory" (this process only)
NOTIFICATION_SEND_LOG = os.getenv("NOTIFICATION_SEND_LOG", "supabase")

LEADERBOARD_PERIODS = ("lastgw", "overall") + tuple(FORM_WINDOWS)

app = Flask(__name__)

# CORS configuration
# -------------------
# In production: only allow the real frontend origin
# In development: allow localhost dev frontends
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN")  # e.g. "https://playtotl.com"
FLASK_ENV = os.getenv("FLASK_ENV", "development")

if FLASK_ENV == "production" and FRONTEND_ORIGIN:
    CORS(app, origins=[FRONTEND_ORIGIN])
else:
    CORS(app, origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ])


# --------------------------------------------------------
# ------------------- Collaborators  ---------------------
# --------------------------------------------------------

# Process-wide so claims survive between requests when the memory log is used
_memory_send_log = MemoryIdempotencyStore()


async def get_store():
    # A fresh async client per request: each async view runs in its own event loop.
    # Use through store_session() so the client's connections are closed afterwards.
    return await SupabaseStore.connect(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)


@asynccontextmanager
async def store_session():
    store = await get_store()
    try:
        yield store
    finally:
        await store.close()


def get_dispatcher(store):
    if NOTIFICATION_SEND_LOG == "memory":
        send_log = _memory_send_log
    else:
        send_log = SupabaseSendLog(store.client)

    return NotificationDispatcher(
        send_log,
        OneSignalSender(ONESIGNAL_APP_ID, ONESIGNAL_REST_API_KEY),
        load_preferences=store.load_preferences,
        environment=NOTIFICATION_ENV,
    )


# --------------------------------------------------------
# ---------------- In-memory rate limiting  --------------
# --------------------------------------------------------

RATE_LIMITS = {
    # bucket_name: (max_attempts, window_seconds)
    "health_ip": (30, 60),             # 30 checks per IP per minute
    "leaderboard_ip": (60, 60),        # 60 leaderboard reads per IP per minute
}

_rate_events = defaultdict(list)
_rate_lock = threading.Lock()


def get_client_ip():
    """
    Try to get the real client IP, honoring X-Forwarded-For when behind a proxy.
    """
    xfwd = request.headers.get("X-Forwarded-For", "")
    if xfwd:
        return xfwd.split(",")[0].strip()
    return request.remote_addr or "unknown"


def is_rate_limited(bucket: str, key: str) -> bool:
    """
    Returns True if this (bucket, key) has exceeded its limit within the window.
    Otherwise records the attempt and returns False.
    """
    if DISABLE_RATE_LIMITS:
        return False

    try:
        limit, window = RATE_LIMITS[bucket]
    except KeyError:
        # Unknown bucket: fail open
        debug_print(f"[RL] Unknown bucket: {bucket}")
        return False

    now = time.time()

    with _rate_lock:
        events = [t for t in _rate_events[(bucket, key)] if now - t < window]

        if len(events) >= limit:
            _rate_events[(bucket, key)] = events
            debug_print(f"[RL] 🚫 RATE LIMITED bucket={bucket}")
            return True

        events.append(now)
        _rate_events[(bucket, key)] = events

    return False


# --------------------------------------------------------
# -------------------- Authentication  -------------------
# --------------------------------------------------------

def decode_token(token):
    """Verify a Supabase access token. Returns the claims, or None if invalid/expired."""
    if not SUPABASE_JWT_SECRET:
        safe_print("⚠️ SUPABASE_JWT_SECRET not set, rejecting token")
        return None
    try:
        return jwt.decode(token, SUPABASE_JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def require_auth(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing or invalid Authorization header"}), 401

        token = auth_header.split(" ")[1]
        payload = decode_token(token)
        if not payload or not payload.get("sub"):
            return jsonify({"error": "Invalid or expired token"}), 401

        request.user = {"user_id": payload["sub"], "email": payload.get("email")}
        # Works for both sync and async views
        return current_app.ensure_sync(f)(*args, **kwargs)
    return wrapper


# --------------------------------------------------------
# -------------------- Error handlers  -------------------
# --------------------------------------------------------

@app.errorhandler(500)
def handle_500(e):
    # Avoid logging full exception message; just the class name
    safe_print("🔴 500 error (class):", type(e).__name__)
    return jsonify({"error": "Internal server error"}), 500


@app.errorhandler(Exception)
def handle_any(e):
    # Let Flask render its own 404 / 405 etc.
    if isinstance(e, HTTPException):
        return e

    safe_print("🔴 Unhandled exception (class):", type(e).__name__)
    return jsonify({"error": "Internal server error"}), 500


@app.errorhandler(APIError)
def handle_api_error(err: APIError):
    safe_print(f"APIError: {err.message}")
    return jsonify({"error": err.message}), err.status_code


# --------------------------------------------------------
# ------------------------ Health  -----------------------
# --------------------------------------------------------

def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    resp.headers["Pragma"] = "no-cache"
    return resp


@app.route("/", methods=["GET"])
def home():
    return jsonify({"message": "TOTL backend running"}), 200


@app.route("/health", methods=["GET", "HEAD"])
def health():
    supplied = None
    if HEALTHCHECK_TOKEN:
        supplied = (
            request.headers.get("X-Health-Token")
            or request.args.get("token")
        )

        if supplied == HEALTHCHECK_TOKEN:
            # Blessed caller (uptime monitor): no rate limit
            return _no_store(make_response("OK", 200))

    ip = get_client_ip()
    if is_rate_limited("health_ip", ip):
        return _no_store(make_response("Too Many Requests", 429))

    # Token configured but caller didn't provide it: hide the endpoint
    if HEALTHCHECK_TOKEN and supplied != HEALTHCHECK_TOKEN:
        return _no_store(make_response("Not Found", 404))

    return _no_store(make_response("OK", 200))


# --------------------------------------------------------
# ------------------ Live score webhook  -----------------
# --------------------------------------------------------

@app.route("/webhooks/live-scores", methods=["POST"])
async def live_scores_webhook():
    """
    Called by the live_scores database webhook on every insert/update.
    Bad payloads and unknown fixtures are acknowledged with 200 so the trigger
    doesn't retry them; store/network failures surface as 500.
    """
    request_id = uuid.uuid4().hex[:8]

    if WEBHOOK_SECRET:
        supplied = request.headers.get("X-Webhook-Secret", "")
        if not secrets.compare_digest(supplied, WEBHOOK_SECRET):
            raise APIError("Unauthorized", 401)

    change = parse_webhook_payload(request.get_json(silent=True))
    if change is None:
        debug_print(f"[scoreWebhook] [{request_id}] Payload without api_match_id, skipping")
        return jsonify(webhook_summary("No match ID")), 200

    safe_print(f"[scoreWebhook] [{request_id}] {change.shape} for api_match_id {change.record.api_match_id}")

    async with store_session() as store:
        summary = await process_score_change(change, store, get_dispatcher(store), request_id)
    return jsonify(summary), 200


# --------------------------------------------------------
# ------------------ Mini-league tables  -----------------
# --------------------------------------------------------

async def _load_league(store, league_id):
    league, members = await asyncio.gather(
        store.fetch_league(league_id),
        store.fetch_league_members(league_id),
    )
    if not league:
        raise APIError("League not found", 404)

    user_id = request.user["user_id"]
    if not any(m["id"] == user_id for m in members):
        raise APIError("Forbidden", 403)

    return league, members


@app.route("/leagues/<league_id>/table", methods=["GET"])
@require_auth
async def league_table(league_id):
    async with store_session() as store:
        league, members = await _load_league(store, league_id)

        current_gw, results, first_kickoffs = await asyncio.gather(
            store.current_gw(),
            store.fetch_results(),
            store.fetch_first_kickoffs(),
        )
        outcomes = outcomes_from_results(results)
        completed = {gw for (gw, _) in outcomes}

        start_gw = resolve_league_start_gw(league, gameweek_deadlines(first_kickoffs), completed, current_gw)
        gws = relevant_gameweeks(start_gw, completed)

        picks = index_picks(await store.fetch_picks(gws, [m["id"] for m in members]))

    rows = compute_league_table(members, gws, outcomes, picks)

    return jsonify({
        "league_id": league_id,
        "league_name": league.get("name"),
        "start_gw": start_gw,
        "relevant_gws": gws,
        "rows": rows,
    }), 200


@app.route("/leagues/<league_id>/gw/<int:gw>", methods=["GET"])
@require_auth
async def league_gw_table(league_id, gw):
    live = request.args.get("live") == "1"

    async with store_session() as store:
        league, members = await _load_league(store, league_id)

        results, picks_rows = await asyncio.gather(
            store.fetch_results([gw]),
            store.fetch_picks([gw], [m["id"] for m in members]),
        )
        outcomes = outcomes_from_results(results)

        if live:
            fixtures = await store.fetch_fixtures(gw)
            live_rows = await store.fetch_live_scores(f.get("api_match_id") for f in fixtures)
            # Declared results win over the live scoreline
            outcomes = {**outcomes_from_live(fixtures, live_rows), **outcomes}

    rows = compute_gw_table(gw, members, outcomes, index_picks(picks_rows))

    return jsonify({
        "league_id": league_id,
        "gw": gw,
        "live": live,
        "fixtures_counted": len([k for k in outcomes if k[0] == gw]),
        "rows": rows,
        "winners": gw_winners(rows) if outcomes else [],
        "league_points": league_points_for_gw(rows) if outcomes else {},
    }), 200


# --------------------------------------------------------
# --------------------- Leaderboards  --------------------
# --------------------------------------------------------

@app.route("/leaderboards/<period>", methods=["GET"])
async def leaderboard(period):
    if period not in LEADERBOARD_PERIODS:
        raise APIError(f"Unknown leaderboard period '{period}'", 400)

    if is_rate_limited("leaderboard_ip", get_client_ip()):
        return jsonify({"error": "Too many requests"}), 429

    async with store_session() as store:
        gw_points = await store.fetch_gw_points()
        names = await store.fetch_user_names({r["user_id"] for r in gw_points})

    return jsonify(leaderboard_for_period(period, gw_points, names)), 200


@app.route("/gw/<int:gw>/results/me", methods=["GET"])
@require_auth
async def my_gw_results(gw):
    user_id = request.user["user_id"]

    async with store_session() as store:
        gw_points, fixtures, results, league_ids = await asyncio.gather(
            store.fetch_gw_points(),
            store.fetch_fixtures(gw),
            store.fetch_results([gw]),
            store.fetch_user_league_ids(user_id),
        )
        names = await store.fetch_user_names({r["user_id"] for r in gw_points})
        outcomes = outcomes_from_results(results)

        async def gw_table_for(league_id):
            league, members = await asyncio.gather(
                store.fetch_league(league_id),
                store.fetch_league_members(league_id),
            )
            picks = index_picks(await store.fetch_picks([gw], [m["id"] for m in members]))
            return league or {"id": league_id}, compute_gw_table(gw, members, outcomes, picks)

        league_tables = await asyncio.gather(*(gw_table_for(lid) for lid in league_ids))

    summary = gw_results_summary(user_id, gw, gw_points, names, len(fixtures), league_tables)
    return jsonify(summary), 200


# --------------------------------------------------------
# --------------------- M  A  I  N  ----------------------
# --------------------------------------------------------

if __name__ == "__main__":
    # Use FLASK_DEBUG=1 in your local env if you want debug mode
    debug_mode = os.getenv("FLASK_DEBUG", "0") == "1"
    if ENABLE_DEBUG_LOGS:
        safe_print(f"Starting with NOTIFICATION_ENV={NOTIFICATION_ENV}, send log={NOTIFICATION_SEND_LOG}")
    app.run(debug=debug_mode)
