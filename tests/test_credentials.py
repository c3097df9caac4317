import base64
import os

import pytest

from minibuild import db
from minibuild.errors import CredentialNotFound, DecryptionFailure, InvalidCredentials
from minibuild.models import AuthType, BuildTask, GitCredential, TaskStatus
from minibuild.services.encryption_service import EncryptionService


def test_encrypt_round_trip_uses_prefix():
    service = EncryptionService('passphrase')
    encrypted = service.encrypt('s3cret')
    assert encrypted.startswith('enc::')
    assert 's3cret' not in encrypted
    assert service.decrypt(encrypted) == 's3cret'


def test_base64_key_is_used_directly():
    key = base64.b64encode(os.urandom(32)).decode()
    service = EncryptionService(key)
    assert service.decrypt(service.encrypt('token')) == 'token'


def test_decrypt_with_wrong_key_fails():
    encrypted = EncryptionService('key-one').encrypt('s3cret')
    with pytest.raises(DecryptionFailure):
        EncryptionService('key-two').decrypt(encrypted)


def test_decrypt_rejects_plaintext():
    with pytest.raises(DecryptionFailure):
        EncryptionService('passphrase').decrypt('legacy-plaintext')


def test_resolve_https_credential(services, user):
    credential = services.credentials.create_credential(
        user.id, 'gitlab', AuthType.HTTPS, username='alice', password='p@ss:word'
    )

    stored = db.session.get(GitCredential, credential.id)
    assert stored.password.startswith('enc::')

    view = services.credentials.resolve(credential.id, user.id)
    assert view.auth_type == AuthType.HTTPS
    assert view.username == 'alice'
    assert view.password == 'p@ss:word'
    assert 'p@ss' not in repr(view)


def test_resolve_other_owner_is_not_found(services, user, other_user):
    credential = services.credentials.create_credential(user.id, 'token', AuthType.TOKEN, token='abc')
    with pytest.raises(CredentialNotFound):
        services.credentials.resolve(credential.id, other_user.id)


@pytest.mark.parametrize('auth_type, fields', [
    (AuthType.HTTPS, {'username': 'alice'}),
    (AuthType.SSH, {}),
    (AuthType.TOKEN, {'username': 'alice'}),
])
def test_missing_required_field_is_invalid(services, user, auth_type, fields):
    credential = services.credentials.create_credential(user.id, 'broken', auth_type, **fields)
    with pytest.raises(InvalidCredentials):
        services.credentials.resolve(credential.id, user.id)


def test_corrupted_ciphertext_raises_decryption_failure(services, user):
    credential = GitCredential(user_id=user.id, name='legacy', auth_type=AuthType.TOKEN, token='enc::bm90LXZhbGlk')
    db.session.add(credential)
    db.session.commit()

    with pytest.raises(DecryptionFailure):
        services.credentials.resolve(credential.id, user.id)

    result = services.credentials.validate(credential.id, user.id)
    assert result['is_valid'] is False
    assert result['error']


def test_validate_valid_credential(services, user):
    credential = services.credentials.create_credential(user.id, 'ssh', AuthType.SSH, ssh_key='KEY')
    assert services.credentials.validate(credential.id, user.id) == {'is_valid': True}


def test_sensitive_field_helpers_skip_empty_values():
    service = EncryptionService('passphrase')
    encrypted = service.encrypt_sensitive_fields(
        {'username': 'alice', 'password': 'pw', 'token': None}, ('password', 'token')
    )
    assert encrypted['username'] == 'alice'
    assert encrypted['password'].startswith('enc::')
    assert encrypted['token'] is None
    assert service.decrypt_sensitive_fields(encrypted, ('password', 'token')) == {
        'username': 'alice', 'password': 'pw', 'token': None,
    }


def test_incomplete_credential_rejects_task_creation(services, user, miniprogram):
    credential = services.credentials.create_credential(user.id, 'https', AuthType.HTTPS, username='alice')
    miniprogram.config.git_credential_id = credential.id
    db.session.commit()

    with pytest.raises(InvalidCredentials) as exc_info:
        services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'}, user=user)

    assert 'password' in exc_info.value.message
    assert BuildTask.query.count() == 0
    assert services.queue.status()['waiting'] == 0


def test_credential_broken_after_enqueue_fails_build_before_clone(services, user, miniprogram, monkeypatch):
    credential = services.credentials.create_credential(
        user.id, 'https', AuthType.HTTPS, username='alice', password='secret'
    )
    miniprogram.config.git_credential_id = credential.id
    db.session.commit()

    clone_calls = []
    monkeypatch.setattr(services.fetcher, 'clone_branch', lambda *args, **kwargs: clone_calls.append(args))

    task = services.tasks.create_task({'app_id': miniprogram.id, 'type': 'UPLOAD', 'version': '1.0.1'}, user=user)
    credential.password = None
    db.session.commit()
    services.queue.run_pending()

    task = services.store.get(task.id)
    assert task.status == TaskStatus.FAILED
    assert 'password' in task.error_message
    assert clone_calls == []
