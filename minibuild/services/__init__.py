# minibuild/services/__init__.py

from dataclasses import dataclass
from typing import Any

from .build_service import BuildExecutor


@dataclass
class ServiceRegistry:
    """应用内的服务实例，由 create_app 构建并保存在 app.extensions['minibuild']"""
    encryption: Any
    credentials: Any
    fetcher: Any
    packaging: Any
    broadcaster: Any
    store: Any
    queue: Any
    tasks: Any
    webhooks: Any
    build_settings: dict

    def create_executor(self, task_id):
        return BuildExecutor(
            task_id,
            store=self.store,
            credentials=self.credentials,
            fetcher=self.fetcher,
            packaging=self.packaging,
            settings=self.build_settings,
        )


__all__ = ['ServiceRegistry', 'BuildExecutor']
