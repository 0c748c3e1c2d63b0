import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient

from ..config import Config

logger = logging.getLogger("eksforge.kube")


@dataclass
class NodeStatus:
    name: str
    ready: bool


def is_node_ready(node: Any) -> bool:
    for condition in (node.status.conditions or []) if node.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubeClient:
    """Thin wrapper over the Kubernetes API used by readiness and add-on tasks."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)

    @classmethod
    def from_kubeconfig_dict(cls, kubeconfig: Dict[str, Any], context: Optional[str] = None) -> "KubeClient":
        """
        Build a client from an in-memory kubeconfig, so a client exists even
        when writing the kubeconfig file was disabled or failed.
        """
        api_client = config.new_client_from_config_dict(config_dict=kubeconfig, context=context)
        return cls(api_client)

    def list_nodes(self, label_selector: str) -> List[NodeStatus]:
        nodes = self.core.list_node(label_selector=label_selector)
        return [NodeStatus(name=n.metadata.name, ready=is_node_ready(n)) for n in nodes.items]

    def wait_for(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        interval: Optional[float] = None,
        description: str = "condition",
    ) -> bool:
        """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
        interval = interval or Config.POLL_INTERVAL
        deadline = time.monotonic() + timeout
        while True:
            try:
                if predicate():
                    return True
            except ApiException as e:
                logger.debug("⏳ %s not met yet: %s", description, e.reason)
            if time.monotonic() >= deadline:
                logger.error("❌ Timed out after %ss waiting for %s", timeout, description)
                return False
            time.sleep(interval)

    def get_config_map(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        try:
            cm = self.core.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return dict(cm.data or {})

    def upsert_config_map(self, name: str, namespace: str, data: Dict[str, str]) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=data,
        )
        try:
            self.core.replace_namespaced_config_map(name=name, namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 404:
                raise
            self.core.create_namespaced_config_map(namespace=namespace, body=body)

    def apply_manifest(self, docs: List[Dict[str, Any]]) -> List[str]:
        """Create every object in ``docs``, patching those that already exist."""
        dyn_client = DynamicClient(self.api_client)
        applied = []
        for doc in docs:
            if not doc or not doc.get("kind") or not doc.get("apiVersion"):
                continue
            kind = doc["kind"]
            name = doc.get("metadata", {}).get("name")
            resource = dyn_client.resources.get(api_version=doc["apiVersion"], kind=kind)
            namespace = doc.get("metadata", {}).get("namespace")
            if resource.namespaced and not namespace:
                namespace = "default"
            try:
                resource.create(body=doc, namespace=namespace)
                logging.debug(f"🆕 Created {kind}/{name}")
            except ApiException as e:
                if e.status != 409:
                    raise
                resource.patch(body=doc, name=name, namespace=namespace,
                               content_type="application/merge-patch+json")
                logging.debug(f"🔁 Patched {kind}/{name}")
            applied.append(f"{kind}/{name}")
        return applied


def load_manifest(text: str) -> List[Dict[str, Any]]:
    return [doc for doc in yaml.safe_load_all(text) if doc]
