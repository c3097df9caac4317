from minibuild.services.auth_service import AuthService

NAMESPACE = '/build'


def events_named(client, name):
    return [event['args'][0] for event in client.get_received(NAMESPACE) if event['name'] == name]


def test_connect_without_token_is_rejected(socket_client):
    client = socket_client(auth_token=None)
    assert not client.is_connected(NAMESPACE)


def test_connect_with_bad_token_is_rejected(socket_client):
    client = socket_client(auth_token='not-a-jwt')
    assert not client.is_connected(NAMESPACE)


def test_connect_emits_connected(socket_client, user):
    client = socket_client()
    assert client.is_connected(NAMESPACE)

    connected = events_named(client, 'connected')
    assert connected[0]['userId'] == user.id
    assert connected[0]['username'] == 'alice'
    client.disconnect(namespace=NAMESPACE)


def test_subscriber_receives_logs_and_status(socket_client, services, user, miniprogram):
    task = services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'}, user=user)
    client = socket_client()
    client.get_received(NAMESPACE)

    client.emit('subscribe-task', {'taskId': task.id}, namespace=NAMESPACE)
    assert events_named(client, 'subscribed') == [{'taskId': task.id, 'message': '订阅成功'}]

    services.queue.run_pending()
    received = client.get_received(NAMESPACE)

    logs = [event['args'][0] for event in received if event['name'] == 'build-log']
    assert logs
    assert all(log['taskId'] == task.id for log in logs)
    assert set(logs[0]) == {'taskId', 'log', 'level', 'timestamp'}

    statuses = [event['args'][0]['status'] for event in received if event['name'] == 'build-status']
    assert statuses[0] == 'RUNNING'
    assert statuses[-1] == 'SUCCESS'


def test_unsubscribed_client_receives_nothing(socket_client, services, user, miniprogram):
    task = services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'}, user=user)
    client = socket_client()
    client.emit('subscribe-task', {'taskId': task.id}, namespace=NAMESPACE)
    client.emit('unsubscribe-task', {'taskId': task.id}, namespace=NAMESPACE)
    client.get_received(NAMESPACE)

    services.store.append_log(task.id, 'hidden')
    assert events_named(client, 'build-log') == []


def test_cannot_subscribe_to_other_users_task(socket_client, services, other_user, make_miniprogram):
    miniprogram = make_miniprogram(owner=other_user, name='Other')
    task = services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'},
                                      user=other_user)
    client = socket_client()
    client.get_received(NAMESPACE)

    client.emit('subscribe-task', {'taskId': task.id}, namespace=NAMESPACE)
    errors = events_named(client, 'error')
    assert errors == [{'message': '无权订阅该任务', 'taskId': task.id}]

    services.store.append_log(task.id, 'private')
    assert events_named(client, 'build-log') == []


def test_admin_can_subscribe_to_any_task(socket_client, services, user, admin, miniprogram):
    task = services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'}, user=user)
    client = socket_client(auth_token=AuthService.create_access_token(admin.id))
    client.get_received(NAMESPACE)

    client.emit('subscribe-task', {'taskId': task.id}, namespace=NAMESPACE)
    assert events_named(client, 'subscribed')[0]['taskId'] == task.id


def test_subscribe_requires_task_id(socket_client):
    client = socket_client()
    client.get_received(NAMESPACE)
    client.emit('subscribe-task', {}, namespace=NAMESPACE)
    assert events_named(client, 'error') == [{'message': '缺少 taskId'}]


def test_online_user_count(socket_client, services, user, other_user):
    first = socket_client()
    second = socket_client()
    third = socket_client(auth_token=AuthService.create_access_token(other_user.id))

    broadcaster = services.broadcaster
    assert broadcaster.get_online_user_count() == 2
    assert broadcaster.get_online_users() == sorted([user.id, other_user.id])

    third.disconnect(namespace=NAMESPACE)
    assert broadcaster.get_online_user_count() == 1
    first.disconnect(namespace=NAMESPACE)
    second.disconnect(namespace=NAMESPACE)
    assert broadcaster.get_online_user_count() == 0


def test_send_to_user_and_broadcast(socket_client, services, user, other_user):
    mine = socket_client()
    theirs = socket_client(auth_token=AuthService.create_access_token(other_user.id))
    mine.get_received(NAMESPACE)
    theirs.get_received(NAMESPACE)

    services.broadcaster.send_to_user(user.id, 'notice', {'message': '构建完成'})
    assert events_named(mine, 'notice') == [{'message': '构建完成'}]
    assert events_named(theirs, 'notice') == []

    services.broadcaster.broadcast('maintenance', {'message': '系统维护'})
    assert events_named(mine, 'maintenance') == [{'message': '系统维护'}]
    assert events_named(theirs, 'maintenance') == [{'message': '系统维护'}]
