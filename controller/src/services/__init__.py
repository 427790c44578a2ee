from controller.src.services.executor import (
    StepExecutor,
    ShellExecutor,
    KubernetesExecutor,
    create_executors,
)
from controller.src.services.notifier import (
    Sink,
    WebhookSink,
    ObjectStoreSink,
    RedisStatusSink,
    create_sinks,
    render_template,
)
from controller.src.services.secrets import (
    SecretStore,
    EnvSecretStore,
    KubernetesSecretStore,
    SecretMasker,
    create_secret_store,
)
from controller.src.services.status_reporter import StatusReporter
from controller.src.services.volumes import (
    VolumeManager,
    LocalVolumeManager,
    KubernetesVolumeManager,
)

__all__ = [
    "StepExecutor",
    "ShellExecutor",
    "KubernetesExecutor",
    "create_executors",
    "Sink",
    "WebhookSink",
    "ObjectStoreSink",
    "RedisStatusSink",
    "create_sinks",
    "render_template",
    "SecretStore",
    "EnvSecretStore",
    "KubernetesSecretStore",
    "SecretMasker",
    "create_secret_store",
    "StatusReporter",
    "VolumeManager",
    "LocalVolumeManager",
    "KubernetesVolumeManager",
]
