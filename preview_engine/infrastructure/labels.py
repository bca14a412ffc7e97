# preview_engine/infrastructure/labels.py
"""Label and annotation keys shared by every backend."""

import json
from typing import Dict, Optional

from preview_engine.core.models import AppName, Environment


APP_NAME_LABEL = "com.aixigo.preview.servant.app-name"
SERVICE_NAME_LABEL = "com.aixigo.preview.servant.service-name"
CONTAINER_TYPE_LABEL = "com.aixigo.preview.servant.container-type"
IMAGE_LABEL = "com.aixigo.preview.servant.image"
REPLICATED_ENV_LABEL = "com.aixigo.preview.servant.replicated-env"
STORAGE_TYPE_LABEL = "com.aixigo.preview.servant.storage-type"


def service_labels(app_name: AppName, service_name: str, container_type) -> Dict[str, str]:
    """Label set identifying the objects (and pods) of one service."""
    return {
        APP_NAME_LABEL: str(app_name),
        SERVICE_NAME_LABEL: service_name,
        CONTAINER_TYPE_LABEL: str(container_type),
    }


def replicated_environment_variable_to_json(env: Optional[Environment]) -> Optional[str]:
    """
    Serialize the replicated variables of `env` so a replica of the
    service can be created later with the same values.

    Returns None when no variable is marked for replication.
    """
    if env is None:
        return None

    replicated = env.replicated()
    if not replicated:
        return None

    return json.dumps(
        {
            variable.key: {
                "value": variable.value.get_secret_value(),
                "templated": variable.templated,
                "replicate": variable.replicate,
            }
            for variable in replicated
        },
        separators=(",", ":"),
    )
