"""
app.py

Flask entrypoint for the GitLab notification relay.

This file intentionally focuses on:
- Flask routing (JSON APIs + the SSE stream used by the browser extension)
- Minimal webhook plumbing (shared-secret check + handing the payload to the dispatcher)

Subscriber bookkeeping lives in `client_registry.py`, the per-tab stream in `sse_channel.py`,
and the normalize/resolve/fan-out pipeline in `dispatcher.py`.
"""

import logging
import sys
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, stream_with_context

from auth import SETTINGS_KEY, requires_gitlab_token
from client_registry import ClientRegistry
from dispatcher import Dispatcher
from event_normalizer import get_header
from gitlab_helpers import InvalidArgument, first_non_empty, get_local_ip, safe_get, utc_now_iso
from settings import Settings, load_settings
from sse_channel import SSEConnection
from wechat_notifier import WeChatWorkNotifier

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Gitlab-Event, X-Gitlab-Token",
    "Access-Control-Expose-Headers": "Content-Type",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ClientRegistry] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Flask:
    if settings is None:
        load_dotenv()
        settings = load_settings()

    app = Flask(__name__)
    app.config[SETTINGS_KEY] = settings

    registry = registry or ClientRegistry()
    if dispatcher is None:
        chat_notifier = WeChatWorkNotifier(settings.wechat_work_webhook_url) if settings.wechat_work_webhook_url else None
        dispatcher = Dispatcher(registry, settings=settings, chat_notifier=chat_notifier)
    app.extensions["client_registry"] = registry
    app.extensions["dispatcher"] = dispatcher

    @app.before_request
    def log_and_preflight():
        logger.info(
            "%s %s ip=%s user_agent=%s",
            request.method, request.path, request.remote_addr, request.headers.get("User-Agent", ""),
        )
        # Browser-extension preflight: answer directly, CORS headers are added in after_request.
        if request.method == "OPTIONS":
            return Response(status=200)
        return None

    @app.after_request
    def add_cors_headers(response: Response) -> Response:
        for k, v in CORS_HEADERS.items():
            response.headers[k] = v
        return response

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "timestamp": utc_now_iso()})

    @app.post("/api/clients/register")
    def api_register_client():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            # Form-encoded registrations are accepted too.
            body = request.form.to_dict()
        try:
            result = registry.register(
                body.get("userId"),
                body.get("userName"),
                body.get("userAgent") or request.headers.get("User-Agent", ""),
                body.get("gitlabBaseUrl"),
            )
        except InvalidArgument as e:
            logger.error("[registry] client registration failed error=%s", e)
            return jsonify({"error": str(e)}), 400
        return jsonify(result)

    @app.get("/events")
    def api_event_stream():
        """
        Server-Sent Events stream for one browser-extension tab.

        No persistence: notifications are only sent while this stream is open.
        """
        user_id = (request.args.get("userId", "") or "").strip()
        if not user_id:
            return jsonify({"error": "userId is required"}), 400

        conn = SSEConnection(
            user_id,
            max_queue_size=settings.sse_queue_size,
            write_timeout=settings.sse_write_timeout,
        )
        registry.connect(user_id, conn, request.args.get("gitlabBaseUrl"))

        headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        }
        resp = Response(
            stream_with_context(conn.frames(settings.heartbeat_interval)),
            headers=headers,
            mimetype="text/event-stream",
        )
        # Covers a response that is torn down before the generator ever runs.
        resp.call_on_close(conn.close)
        return resp

    @app.get("/api/clients")
    def api_list_clients():
        return jsonify({"clients": registry.list_clients(), "stats": registry.stats().to_dict()})

    @app.post("/webhook/gitlab")
    @requires_gitlab_token
    def gitlab_webhook():
        """
        GitLab webhook endpoint.

        Notes:
        - The response never waits for fan-out: GitLab gets 200 as soon as the payload is accepted.
        - Normalization, chat-webhook delivery and browser fan-out run on the dispatcher's pool.
        """
        try:
            payload = request.get_json(force=True)
            event_name = get_header(request.headers, "X-Gitlab-Event")
            logger.info(
                "[gitlab-webhook] received event=%s project=%s branch=%s user=%s",
                event_name or "unknown",
                first_non_empty(safe_get(safe_get(payload, "project"), "name"), safe_get(safe_get(payload, "repository"), "name")),
                safe_get(payload, "ref"),
                first_non_empty(safe_get(safe_get(payload, "user"), "name"), safe_get(payload, "user_username")),
            )
            if event_name == "Pipeline Hook":
                logger.debug("[gitlab-webhook] pipeline payload=%s", payload)

            dispatcher.submit(payload, request.headers)

            return jsonify(
                {
                    "success": True,
                    "message": "Webhook received and processing",
                    "timestamp": utc_now_iso(),
                }
            )
        except Exception as e:
            logger.exception("[gitlab-webhook] failed to accept webhook")
            return jsonify({"error": "Internal Server Error", "message": str(e)}), 500

    @app.errorhandler(404)
    def not_found(_e):
        return jsonify({"error": "Not Found"}), 404

    @app.errorhandler(500)
    def internal_error(_e):
        return jsonify({"error": "Internal Server Error"}), 500

    return app


def main() -> None:
    load_dotenv()
    settings = load_settings()
    configure_logging(settings.log_level)

    app = create_app(settings)
    display_host = settings.host if settings.host_configured else get_local_ip()
    base = f"http://{display_host}:{settings.port}"
    logger.info("Server is running on %s", base)
    logger.info("GitLab webhook URL: %s/webhook/gitlab", base)
    logger.info("Health check URL: %s/health", base)

    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    except OSError as e:
        logger.error("Server failed to start error=%s errno=%s", e, e.errno)
        sys.exit(1)
    finally:
        app.extensions["dispatcher"].shutdown(wait=False)


if __name__ == "__main__":
    main()
