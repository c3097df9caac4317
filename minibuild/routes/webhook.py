"""
Webhook 路由
"""

from flask import Blueprint, current_app, g, jsonify, request
from minibuild import get_services
from minibuild.services.auth_service import login_required
from minibuild.services.webhook_service import WebhookService, normalize_event_headers
import logging

logger = logging.getLogger(__name__)

webhook_bp = Blueprint('webhook', __name__)


def _handle_event(app_id, provider=None):
    event_type, provider = normalize_event_headers(request.headers, provider)
    logger.info(f"收到Webhook: app_id={app_id}, provider={provider}, event={event_type}")

    raw_body = request.get_data(cache=True)
    payload = request.get_json(silent=True) or {}
    result = get_services().webhooks.handle_git_event(
        app_id, provider, event_type, payload, raw_body, request.headers
    )
    return jsonify({'success': True, **result})


@webhook_bp.route('/webhooks/github/<int:app_id>', methods=['POST'])
def github_webhook(app_id):
    return _handle_event(app_id, 'github')


@webhook_bp.route('/webhooks/gitlab/<int:app_id>', methods=['POST'])
def gitlab_webhook(app_id):
    return _handle_event(app_id, 'gitlab')


@webhook_bp.route('/webhooks/gitee/<int:app_id>', methods=['POST'])
def gitee_webhook(app_id):
    return _handle_event(app_id, 'gitee')


@webhook_bp.route('/webhooks/events/<int:app_id>', methods=['POST'])
def generic_webhook(app_id):
    """通用入口，平台由 X-Git-Provider 指定"""
    return _handle_event(app_id)


@webhook_bp.route('/api/webhooks/config/<int:app_id>', methods=['GET'])
@login_required
def api_generate_webhook_config(app_id):
    """生成Webhook配置API"""
    config = WebhookService.generate_webhook_config(
        app_id, g.current_user, current_app.config['APP_URL']
    )
    return jsonify({'success': True, 'data': config})


@webhook_bp.route('/api/webhooks/<int:webhook_id>/test', methods=['POST'])
@login_required
def api_test_webhook(webhook_id):
    """测试Webhook API"""
    result = WebhookService.test_webhook(webhook_id, g.current_user)
    return jsonify(result)
