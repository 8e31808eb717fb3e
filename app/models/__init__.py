from app.models.build_config import BuildArg, BuildConfig, BuildEnvVar, BuildStrategy  # noqa: F401
from app.models.build_request import BuildRequest, BuildRequestStatus  # noqa: F401
from app.models.deployment import Deployment, DeploymentStatus, DeploymentTrigger  # noqa: F401
from app.models.git_repository import GitAuthType, GitProvider, GitRepository  # noqa: F401
from app.models.webhook_event import WebhookEvent, WebhookEventStatus  # noqa: F401
