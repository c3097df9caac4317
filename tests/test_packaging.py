import os

import pytest

from minibuild.errors import BuildStageError, StageTimeout
from minibuild.services.packaging_service import (
    UPLOAD_SETTINGS, MiniprogramCiAdapter, PackagingProject, merge_settings
)
from minibuild.services.shell import run_command

FAKE_CLI = """#!/bin/sh
echo "$@" > "{args_file}"
while [ $# -gt 0 ]; do
  case "$1" in
    --info-output) info="$2"; shift;;
    --qrcode-output-dest) dest="$2"; shift;;
  esac
  shift
done
echo "compiling 40%"
echo "uploading 100%"
[ -n "$info" ] && echo '{{"subPackageInfo": [{{"name": "__FULL__", "size": 100}}]}}' > "$info"
[ -n "$dest" ] && echo "qrcode" > "$dest"
echo "warn: miniprogram_npm/foo/index.js:3 main not found"
exit {exit_code}
"""


@pytest.fixture
def make_cli(tmp_path):
    def _make(exit_code=0):
        args_file = tmp_path / 'args.txt'
        binary = tmp_path / 'miniprogram-ci'
        binary.write_text(FAKE_CLI.format(args_file=args_file, exit_code=exit_code))
        os.chmod(binary, 0o755)
        return MiniprogramCiAdapter(binary=str(binary), timeout=30), args_file
    return _make


@pytest.fixture
def project(tmp_path):
    return PackagingProject(appid='wx1234567890', project_path=str(tmp_path), private_key_path='/keys/private.key')


def test_upload_passes_settings_and_reads_package_info(make_cli, project):
    adapter, args_file = make_cli()
    progress = []

    info = adapter.upload(project, '1.2.3', '发布', merge_settings(UPLOAD_SETTINGS, {'es7': False}),
                          on_progress=progress.append)

    assert info == {'package_size': [{'name': '__FULL__', 'size': 100}]}
    assert progress == [40, 100]
    args = args_file.read_text()
    assert 'upload --pp' in args
    assert '--uv 1.2.3' in args
    assert '--enable-minify true' in args
    assert '--enable-es7 false' in args


def test_preview_writes_qrcode(make_cli, project, tmp_path):
    adapter, args_file = make_cli()
    dest = tmp_path / 'preview.jpg'

    info = adapter.preview(project, 'preview', {'minify': False}, 'image', str(dest))

    assert info['qrcode_path'] == str(dest)
    assert dest.read_text().strip() == 'qrcode'
    assert '--qrcode-format image' in args_file.read_text()


def test_pack_npm_collects_warnings(make_cli, project):
    adapter, _ = make_cli()
    warnings = adapter.pack_npm(project)

    assert warnings == [{
        'code': 'PACK_NPM_WARNING',
        'msg': 'warn: miniprogram_npm/foo/index.js:3 main not found',
        'js_path': 'miniprogram_npm/foo/index.js',
        'start_line': 3,
    }]


def test_failed_command_raises(make_cli, project):
    adapter, _ = make_cli(exit_code=2)
    with pytest.raises(BuildStageError) as exc_info:
        adapter.upload(project, '1.0.0', '', {})
    assert 'upload 执行失败' in exc_info.value.message


def test_missing_binary_raises(project):
    adapter = MiniprogramCiAdapter(binary='/nonexistent/miniprogram-ci')
    with pytest.raises(BuildStageError):
        adapter.pack_npm(project)


def test_run_command_streams_lines(tmp_path):
    lines = []
    result = run_command('echo one; echo; echo two', cwd=str(tmp_path), timeout=10, on_line=lines.append, shell=True)
    assert result.ok
    assert lines == ['one', 'two']
    assert result.tail(1) == 'two'


def test_run_command_timeout_kills_process(tmp_path):
    with pytest.raises(StageTimeout):
        run_command('sleep 30', cwd=str(tmp_path), timeout=0.2, shell=True)


def test_run_command_kills_process_when_callback_fails(tmp_path):
    pids = []

    def on_line(line):
        pids.append(int(line))
        raise RuntimeError('callback failed')

    with pytest.raises(RuntimeError):
        run_command('echo $$; exec sleep 30', cwd=str(tmp_path), timeout=10, on_line=on_line, shell=True)

    assert len(pids) == 1
    with pytest.raises(ProcessLookupError):
        os.kill(pids[0], 0)
