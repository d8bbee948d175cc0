import threading

from django.apps import AppConfig


class IndexingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.indexing'
    verbose_name = 'Document Indexing Pipeline'

    _runtime = None
    _runtime_lock = threading.Lock()

    @property
    def runtime(self):
        """The process-wide PipelineRuntime, built from settings on first use."""
        if self._runtime is None:
            with self._runtime_lock:
                if self._runtime is None:
                    from apps.indexing.runtime import build_runtime
                    self._runtime = build_runtime()
        return self._runtime

    @runtime.setter
    def runtime(self, value):
        self._runtime = value
