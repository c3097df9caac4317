"""
Git 仓库辅助路由
"""

from flask import Blueprint, g, jsonify, request
from minibuild import get_services
from minibuild.errors import MinibuildError
from minibuild.services.auth_service import login_required
import logging

logger = logging.getLogger(__name__)

git_bp = Blueprint('git', __name__)


@git_bp.route('/api/git/branches', methods=['POST'])
@login_required
def api_list_branches():
    """获取远程仓库分支列表，错误信息在响应体中返回"""
    data = request.get_json(silent=True) or {}
    repository_url = data.get('repository_url')
    credential_id = data.get('credential_id')
    services = get_services()

    try:
        credential = None
        if credential_id:
            credential = services.credentials.resolve(credential_id, g.current_user.id)
        result = services.fetcher.list_branches(repository_url, credential)
    except MinibuildError as e:
        logger.warning(f"获取分支列表失败: {e.message}")
        return jsonify({
            'success': False,
            'branches': [],
            'default_branch': '',
            'error': e.message
        })

    return jsonify({
        'success': True,
        'branches': result['branches'],
        'default_branch': result['default_branch']
    })
