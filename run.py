from minibuild import create_app, socketio
import atexit
import logging
import os

from config import Config

# 配置日志
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# 设置第三方库的日志级别为WARNING，避免过多输出
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('git').setLevel(logging.WARNING)
logging.getLogger('engineio').setLevel(logging.WARNING)
logging.getLogger('socketio').setLevel(logging.WARNING)

app = create_app()


def _shutdown_queue():
    """退出时等待运行中的构建结束"""
    app.extensions['minibuild'].queue.shutdown(wait=True)


atexit.register(_shutdown_queue)

if __name__ == '__main__':
    socketio.run(
        app,
        debug=os.getenv('FLASK_DEBUG', '0') == '1',
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        allow_unsafe_werkzeug=True
    )
