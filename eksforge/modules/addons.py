"""
Add-on tasks.

Networking add-ons have to be in place before nodes try to join, otherwise
node readiness can stall; everything else is installed once node groups are
ready. ``create_addon_plans`` splits the configured add-ons accordingly.
"""
import logging
from typing import Callable, List, Optional, Tuple

import requests

from ..logging import OutputSink
from ..models import Addon, ClusterSpec, is_neuron_instance, is_nvidia_instance
from ..providers.base import Provider
from ..tasks import Kind, Task, TaskTree
from ..utils.kube import load_manifest

logger = logging.getLogger("eksforge.addons")

PRE_NODEGROUP_ADDONS = {"vpc-cni"}

NVIDIA_PLUGIN_URL = "https://raw.githubusercontent.com/NVIDIA/k8s-device-plugin/v0.9.0/nvidia-device-plugin.yml"
NEURON_PLUGIN_URL = "https://raw.githubusercontent.com/aws/aws-neuron-sdk/master/src/k8/k8s-neuron-device-plugin.yml"
NEURON_RBAC_URL = "https://raw.githubusercontent.com/aws/aws-neuron-sdk/master/src/k8/k8s-neuron-device-plugin-rbac.yml"


def is_pre_nodegroup_addon(addon: Addon) -> bool:
    return addon.name.lower() in PRE_NODEGROUP_ADDONS


class CreateAddonTask(Task):
    def __init__(self, provider: Provider, spec: ClusterSpec, addon: Addon, wait: bool,
                 sink: Optional[OutputSink] = None, timeout: Optional[float] = None):
        self.provider = provider
        self.spec = spec
        self.addon = addon
        self.wait = wait
        self.timeout = timeout
        self.sink = sink or OutputSink()
        self.name = f'create addon "{addon.name}"'

    def run(self) -> None:
        version = self.addon.version or "latest"
        self.sink.info(f"📦 Creating addon {self.addon.name!r} ({version})")
        self.provider.create_addon(self.spec, self.addon, self.wait, self.timeout)
        self.sink.success(f"addon {self.addon.name!r} created")


def create_addon_plans(
    provider: Provider,
    spec: ClusterSpec,
    sink: Optional[OutputSink] = None,
    timeout: Optional[float] = None,
) -> Tuple[TaskTree, TaskTree]:
    """Return the (pre-nodegroup, post-nodegroup) add-on trees.

    ``timeout`` bounds each add-on health wait; None uses the configured default.
    """
    pre = TaskTree(kind=Kind.SEQUENTIAL, label="create pre-nodegroup addons")
    post = TaskTree(kind=Kind.PARALLEL, label="create addons")
    # only worth waiting on add-on health when there are nodes to run it
    wait = spec.has_nodes()
    for addon in spec.addons:
        if is_pre_nodegroup_addon(addon):
            pre.append(CreateAddonTask(provider, spec, addon, wait=False, sink=sink, timeout=timeout))
        else:
            post.append(CreateAddonTask(provider, spec, addon, wait=wait or addon.wait, sink=sink, timeout=timeout))
    return pre, post


def fetch_manifest(url: str) -> List[dict]:
    response = requests.get(url, timeout=30)
    response.raise_for_status()
    return load_manifest(response.text)


class InstallDevicePluginTask(Task):
    """Apply a device plugin daemonset for accelerated instance types."""

    def __init__(self, kube, plugin: str, urls: List[str],
                 fetch: Callable[[str], List[dict]] = fetch_manifest,
                 sink: Optional[OutputSink] = None):
        self.kube = kube
        self.plugin = plugin
        self.urls = urls
        self.fetch = fetch
        self.sink = sink or OutputSink()
        self.name = f"install {plugin} device plugin"

    def run(self) -> None:
        for url in self.urls:
            applied = self.kube.apply_manifest(self.fetch(url))
            logger.debug("applied %s from %s", ", ".join(applied), url)
        self.sink.success(f"{self.plugin} device plugin installed")


def device_plugin_tasks(
    kube,
    spec: ClusterSpec,
    install_nvidia: bool = True,
    install_neuron: bool = True,
    fetch: Callable[[str], List[dict]] = fetch_manifest,
    sink: Optional[OutputSink] = None,
) -> List[Task]:
    tasks: List[Task] = []
    instance_types = [ng.instance_type for ng in spec.all_nodegroups]
    if any(is_nvidia_instance(t) for t in instance_types):
        if install_nvidia:
            tasks.append(InstallDevicePluginTask(kube, "NVIDIA", [NVIDIA_PLUGIN_URL], fetch, sink))
        elif sink:
            sink.warning("GPU instance types in use but the NVIDIA device plugin will not be installed")
    if any(is_neuron_instance(t) for t in instance_types):
        if install_neuron:
            tasks.append(InstallDevicePluginTask(kube, "Neuron", [NEURON_RBAC_URL, NEURON_PLUGIN_URL], fetch, sink))
        elif sink:
            sink.warning("Inferentia instance types in use but the Neuron device plugin will not be installed")
    return tasks
