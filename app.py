# A web relay proxy service using Flask.
# Every request from a relayed page goes through RELAY_PATH; every document
# coming back is rewritten so its references point at RELAY_PATH too.

import logging

from flask import Flask, Response, jsonify, render_template, request
from flask_cors import CORS

from interceptor import FORM_SUBMIT_MESSAGE, NAVIGATE_MESSAGE
from relay import InvalidUrl, RelayRequest, UpstreamError, relay
from rewriter import rewrite_content
from settings import (
    HEALTH_PATH,
    LOG_LEVEL,
    MAX_CONTENT_LENGTH,
    PROXY_HOST,
    PROXY_PORT,
    RELAY_PATH,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
CORS(app)

# --- Configuration ---
RELAY_METHODS = ['GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE']

NOTICE_BANNER_TEXT = (
    "This connection is relayed by a proxy server, which can view or modify traffic. "
    "Avoid submitting passwords, financial details, or any sensitive personal data."
)


def _inbound_body():
    """Parsed inbound body and whether it arrived as JSON."""
    if request.is_json:
        return request.get_json(silent=True), True
    if request.form:
        return request.form.to_dict(flat=False), False
    return None, False


def _target_url(body, body_is_json):
    target_url = request.args.get('url')
    if target_url:
        return target_url
    if body_is_json and isinstance(body, dict):
        return body.get('url')
    return request.form.get('url')


@app.route('/')
def index():
    """Renders the shell page that hosts relayed documents in an iframe."""
    return render_template(
        'index.html',
        relay_path=RELAY_PATH,
        navigate_message=NAVIGATE_MESSAGE,
        form_submit_message=FORM_SUBMIT_MESSAGE,
        notice=NOTICE_BANNER_TEXT,
    )


@app.route(HEALTH_PATH)
def health():
    return jsonify(status='ok')


@app.route(RELAY_PATH, methods=RELAY_METHODS)
def proxy():
    """
    The main relay endpoint. The target comes from ?url= or from the url
    field of a JSON or form body; the upstream status is mirrored.
    """
    body, body_is_json = _inbound_body()
    relay_request = RelayRequest(
        method=request.method,
        target_url=_target_url(body, body_is_json),
        headers=request.headers,
        body=body,
        body_is_json=body_is_json,
    )

    try:
        upstream = relay(relay_request)
    except InvalidUrl as e:
        logger.warning(f"Rejected relay request: {e}")
        return jsonify(error=str(e)), 400
    except UpstreamError as e:
        logger.error(f"Proxy error: {e}")
        return jsonify(error='Proxy request failed', message=str(e)), 500

    # --- Content Rewriting ---
    if request.method == 'HEAD':
        content, content_type = upstream.body, upstream.content_type
    else:
        content, content_type = rewrite_content(upstream.body, upstream.content_type, upstream.url)

    response = Response(content, status=upstream.status_code, headers=upstream.headers)
    if content_type:
        response.headers['Content-Type'] = content_type
    else:
        response.headers.pop('Content-Type', None)
    return response


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info(f"Proxy server running on {PROXY_HOST}:{PROXY_PORT}")
    app.run(host=PROXY_HOST, port=PROXY_PORT)


if __name__ == '__main__':
    main()
