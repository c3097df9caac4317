from minibuild.models import TaskStatus
from minibuild.services.auth_service import AuthService


def post_task(client, headers, app_id, **data):
    data.setdefault('type', 'UPLOAD')
    data.setdefault('version', '1.0.1')
    return client.post('/api/tasks', json={'app_id': app_id, **data}, headers=headers)


def test_create_task_requires_token(client, miniprogram):
    response = post_task(client, {}, miniprogram.id)
    assert response.status_code == 401
    assert response.get_json() == {
        'success': False, 'code': 'UNAUTHORIZED', 'message': '缺少访问令牌'
    }


def test_create_task(client, auth_headers, miniprogram):
    response = post_task(client, auth_headers, miniprogram.id, branch='develop')

    assert response.status_code == 201
    body = response.get_json()
    assert body['success'] is True
    assert body['data']['status'] == TaskStatus.PENDING
    assert body['data']['branch'] == 'develop'
    assert 'build_log' not in body['data']


def test_create_task_validation_error(client, auth_headers, miniprogram):
    response = post_task(client, auth_headers, miniprogram.id, type='DEPLOY')
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_duplicate_task_conflicts(client, auth_headers, miniprogram):
    post_task(client, auth_headers, miniprogram.id)
    response = post_task(client, auth_headers, miniprogram.id)
    assert response.status_code == 409


def test_task_detail_and_logs(client, auth_headers, services, miniprogram):
    task_id = post_task(client, auth_headers, miniprogram.id).get_json()['data']['id']
    services.queue.run_pending()

    detail = client.get(f'/api/tasks/{task_id}', headers=auth_headers).get_json()['data']
    assert detail['status'] == TaskStatus.SUCCESS
    assert detail['progress'] == 100
    assert detail['result']['package_size']

    logs = client.get(f'/api/tasks/{task_id}/logs', headers=auth_headers).get_json()['data']
    assert logs['status'] == TaskStatus.SUCCESS
    assert '构建完成' in logs['build_log']


def test_task_detail_not_found(client, auth_headers):
    response = client.get('/api/tasks/missing', headers=auth_headers)
    assert response.status_code == 404


def test_other_user_cannot_read_task(client, auth_headers, miniprogram, other_user):
    task_id = post_task(client, auth_headers, miniprogram.id).get_json()['data']['id']
    other_headers = {'Authorization': f'Bearer {AuthService.create_access_token(other_user.id)}'}

    assert client.get(f'/api/tasks/{task_id}', headers=other_headers).status_code == 401


def test_cancel_and_retry(client, auth_headers, miniprogram):
    task_id = post_task(client, auth_headers, miniprogram.id).get_json()['data']['id']

    response = client.post(f'/api/tasks/{task_id}/cancel', headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['data']['status'] == TaskStatus.CANCELLED

    assert client.post(f'/api/tasks/{task_id}/cancel', headers=auth_headers).status_code == 409
    assert client.post(f'/api/tasks/{task_id}/retry', headers=auth_headers).status_code == 409


def test_retry_failed_task(client, auth_headers, services, miniprogram, private_key):
    private_key.unlink()
    task_id = post_task(client, auth_headers, miniprogram.id).get_json()['data']['id']
    services.queue.run_pending()
    assert services.store.get(task_id).status == TaskStatus.FAILED

    response = client.post(f'/api/tasks/{task_id}/retry', headers=auth_headers)
    assert response.status_code == 200
    assert response.get_json()['data']['retry_count'] == 1
    assert response.get_json()['data']['status'] == TaskStatus.PENDING


def test_list_tasks_paginates(client, auth_headers, services, make_miniprogram):
    for i in range(3):
        app_id = make_miniprogram(name=f'App {i}').id
        post_task(client, auth_headers, app_id)

    body = client.get('/api/tasks?page=2&limit=2', headers=auth_headers).get_json()
    assert body['total'] == 3
    assert body['page'] == 2
    assert body['total_pages'] == 2
    assert body['has_prev'] is True and body['has_next'] is False
    assert len(body['data']) == 1


def test_statistics_and_queue_status(client, auth_headers, miniprogram):
    post_task(client, auth_headers, miniprogram.id)

    stats = client.get('/api/tasks/statistics', headers=auth_headers).get_json()['data']
    assert stats['total'] == 1
    assert stats['pending'] == 1
    assert stats['success_rate'] == 0

    queue = client.get('/api/tasks/queue-status', headers=auth_headers).get_json()['data']
    assert queue['waiting'] == 1


def test_branches_reports_errors_in_band(client, auth_headers):
    response = client.post('/api/git/branches', json={'repository_url': 'ftp://example.com/repo'},
                           headers=auth_headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is False
    assert body['branches'] == []
    assert body['error']


def test_branches_lists_remote(client, auth_headers, fixture_repo):
    response = client.post('/api/git/branches', json={'repository_url': f'file://{fixture_repo}'},
                           headers=auth_headers)
    body = response.get_json()
    assert body['success'] is True
    assert body['default_branch'] == 'master'
    assert {branch['name'] for branch in body['branches']} == {'master', 'develop'}


def test_webhook_config_endpoint(client, auth_headers, miniprogram):
    response = client.get(f'/api/webhooks/config/{miniprogram.id}', headers=auth_headers)
    data = response.get_json()['data']
    assert data['gitlab_url'].endswith(f'/webhooks/gitlab/{miniprogram.id}')
    assert data['secret']
