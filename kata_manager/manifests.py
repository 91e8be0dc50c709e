"""Manifest lookup and version substitution."""

import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import yaml

from kata_manager.config import KataSettings
from kata_manager.exceptions import ManifestError
from kata_manager.logging_config import get_logger

logger = get_logger(__name__)

RUNTIMECLASS_MANIFEST = "kata-runtimeclass.yaml"
DEPLOY_MANIFEST = "kata-deploy.yaml"
CLEANUP_MANIFEST = "kata-cleanup.yaml"
TEST_POD_MANIFEST = "test-pod.yaml"

VERSION_PLACEHOLDER = "${KATA_VERSION}"
NAMESPACE_PLACEHOLDER = "${K8S_NAMESPACE}"
DEFAULT_NAMESPACE = "kube-system"


def manifest_path(settings: KataSettings, name: str) -> Path:
    """Locate a static manifest in the configured manifests directory.

    Raises:
        ManifestError: If the file does not exist
    """
    path = settings.manifests_dir / name
    if not path.is_file():
        raise ManifestError(
            f"Manifest not found: {path}",
            f"Set MANIFESTS_DIR to a directory containing {name}",
        )
    return path


def render(text: str, kata_version: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Substitute the Kata version and namespace and check the result is valid YAML.

    Only ``${KATA_VERSION}`` and ``${K8S_NAMESPACE}`` are replaced; any other
    ``$`` text is left alone.
    """
    rendered = text.replace(VERSION_PLACEHOLDER, kata_version).replace(
        NAMESPACE_PLACEHOLDER, namespace
    )
    try:
        documents = [d for d in yaml.safe_load_all(rendered) if d is not None]
    except yaml.YAMLError as e:
        raise ManifestError("Rendered manifest is not valid YAML", str(e))
    if not documents:
        raise ManifestError("Rendered manifest contains no documents")
    for doc in documents:
        if not isinstance(doc, dict) or "kind" not in doc:
            raise ManifestError("Rendered manifest has a document without a 'kind'")
    return rendered


@contextmanager
def rendered_manifest(settings: KataSettings, name: str) -> Iterator[Path]:
    """Yield a temporary file holding the manifest with version and namespace filled in."""
    source = manifest_path(settings, name)
    rendered = render(source.read_text(), settings.kata_version, settings.k8s_namespace)

    with tempfile.NamedTemporaryFile(
        "w", prefix=f"{source.stem}-", suffix=".yaml", delete=False
    ) as tmp:
        tmp.write(rendered)
        tmp_path = Path(tmp.name)
    logger.debug(f"Rendered {name} for Kata {settings.kata_version} at {tmp_path}")

    try:
        yield tmp_path
    finally:
        tmp_path.unlink(missing_ok=True)
