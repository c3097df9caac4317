"""应用信号"""
from blinker import Namespace

_signals = Namespace()

# 构建结束（成功或失败），参数: task_id, success, details
build_finished = _signals.signal('build-finished')
