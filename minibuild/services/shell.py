"""外部命令执行"""
import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass

from minibuild.errors import StageTimeout

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self):
        return self.returncode == 0

    def tail(self, lines=20):
        return '\n'.join(self.output.splitlines()[-lines:])


def _kill_process_group(proc):
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_command(command, cwd, timeout, env=None, on_line=None, shell=False):
    """执行命令并逐行回调输出

    Args:
        command: 参数列表，shell=True 时为命令字符串
        cwd: 工作目录
        timeout: 超时秒数，超时后杀掉整个进程组
        on_line: 每行输出的回调

    Raises:
        StageTimeout: 命令执行超时
    """
    proc = subprocess.Popen(
        command,
        cwd=cwd,
        env=env,
        shell=shell,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors='replace',
        start_new_session=True,
    )

    timed_out = threading.Event()

    def _on_timeout():
        timed_out.set()
        _kill_process_group(proc)

    timer = threading.Timer(timeout, _on_timeout)
    timer.daemon = True
    timer.start()

    lines = []
    try:
        for line in proc.stdout:
            line = line.rstrip('\n')
            lines.append(line)
            if on_line and line.strip():
                on_line(line)
        proc.wait()
    finally:
        timer.cancel()
        # 回调抛出异常时子进程可能仍在运行
        if proc.poll() is None:
            _kill_process_group(proc)
        proc.wait()
        proc.stdout.close()

    if timed_out.is_set():
        raise StageTimeout(f'命令执行超时（{timeout}秒）: {command if shell else " ".join(command)}')

    return CommandResult(returncode=proc.returncode, output='\n'.join(lines))
