"""
Cluster provisioning workflow.

Runs the creation of a cluster as an explicit stage machine:

    VALIDATE -> RESOLVE_NETWORK -> BUILD_PLAN -> EXECUTE -> WRITE_CREDENTIALS
    -> AUTHORIZE_AND_AWAIT_NODES -> RUN_DEFERRED_ADDONS -> GITOPS_BOOTSTRAP
    -> CHECK_CLIENT_TOOLS -> PRIVATE_LOCKDOWN -> DONE

Every stage handler returns the next stage; FAILED and DONE are terminal.
Errors found before anything is created (invalid spec, conflicting inputs,
unsupported features, insufficient subnets) are raised straight away.
Failures after that point are collected on the result, and partially
created infrastructure is left in place for inspection or a re-run.
"""
import logging
import subprocess
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..config import Config
from ..logging import OutputSink
from ..models import ClusterSpec, validate_spec
from ..providers.base import Provider
from ..schema import spec_to_dict
from ..tasks import Kind, TaskGroup, TaskTree
from ..utils import redact_sensitive_data
from ..utils.kube import KubeClient
from . import kubeconfig
from .addons import device_plugin_tasks
from .gitops import FluxInstaller
from .network import NetworkFlags, ResolvedNetwork, resolve_network
from .nodegroups import NodeGroupCreationTask, build_readiness_plan
from .planner import Features, PlanBuilder
from .utils import send_slack_alert

logger = logging.getLogger("eksforge.workflow")


class Stage(str, Enum):
    VALIDATE = "validate"
    RESOLVE_NETWORK = "resolve-network"
    BUILD_PLAN = "build-plan"
    EXECUTE = "execute"
    WRITE_CREDENTIALS = "write-credentials"
    AUTHORIZE_AND_AWAIT_NODES = "authorize-and-await-nodes"
    RUN_DEFERRED_ADDONS = "run-deferred-addons"
    GITOPS_BOOTSTRAP = "gitops-bootstrap"
    CHECK_CLIENT_TOOLS = "check-client-tools"
    PRIVATE_LOCKDOWN = "private-lockdown"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STAGES = (Stage.DONE, Stage.FAILED)


@dataclass
class WorkflowOptions:
    kubeconfig_path: Optional[str] = None
    write_kubeconfig: bool = True
    set_context: bool = True
    authenticator_role_arn: Optional[str] = None
    profile: Optional[str] = None
    features: Features = field(default_factory=Features)
    node_ready_timeout: Optional[float] = None
    gitops_short_circuit: bool = Config.GITOPS_SHORT_CIRCUIT
    slack_webhook: str = Config.SLACK_WEBHOOK


@dataclass
class WorkflowResult:
    cluster_name: str
    region: str
    stages: List[Stage] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    network: Optional[ResolvedNetwork] = None
    plan_description: str = ""
    ready_nodegroups: List[str] = field(default_factory=list)
    failed_nodegroups: List[str] = field(default_factory=list)
    kubeconfig_path: Optional[str] = None
    dry_run: bool = False

    @property
    def final_stage(self) -> Optional[Stage]:
        return self.stages[-1] if self.stages else None

    @property
    def succeeded(self) -> bool:
        return self.final_stage is Stage.DONE and not self.errors


class ClusterWorkflow:
    """Create one cluster from a specification.

    Collaborators that reach outside the process are injectable: the
    provider, the Kubernetes client factory, the GitOps installer factory
    and the client tool check.
    """

    def __init__(
        self,
        spec: ClusterSpec,
        network_flags: NetworkFlags,
        provider: Provider,
        sink: Optional[OutputSink] = None,
        options: Optional[WorkflowOptions] = None,
        kube_factory: Callable[[Dict[str, Any], Optional[str]], Any] = KubeClient.from_kubeconfig_dict,
        gitops_factory: Callable[..., Any] = FluxInstaller,
        client_check: Callable[[Optional[str], Optional[str]], None] = kubeconfig.check_kubectl,
    ):
        self.spec = spec
        self.network_flags = network_flags
        self.provider = provider
        self.sink = sink or OutputSink()
        self.options = options or WorkflowOptions()
        self.kube_factory = kube_factory
        self.gitops_factory = gitops_factory
        self.client_check = client_check

        self.result = WorkflowResult(
            cluster_name=spec.metadata.name,
            region=spec.metadata.region,
            dry_run=network_flags.dry_run,
        )
        self.network: Optional[ResolvedNetwork] = None
        self.plan: Optional[TaskTree] = None
        self.deferred_addons: Optional[TaskTree] = None
        self.kube = None
        self.context: Optional[str] = None
        self._handlers = {
            Stage.VALIDATE: self._validate,
            Stage.RESOLVE_NETWORK: self._resolve_network,
            Stage.BUILD_PLAN: self._build_plan,
            Stage.EXECUTE: self._execute,
            Stage.WRITE_CREDENTIALS: self._write_credentials,
            Stage.AUTHORIZE_AND_AWAIT_NODES: self._authorize_and_await_nodes,
            Stage.RUN_DEFERRED_ADDONS: self._run_deferred_addons,
            Stage.GITOPS_BOOTSTRAP: self._gitops_bootstrap,
            Stage.CHECK_CLIENT_TOOLS: self._check_client_tools,
            Stage.PRIVATE_LOCKDOWN: self._private_lockdown,
        }

    # -- driver ---------------------------------------------------------

    def run(self) -> WorkflowResult:
        muted = self.sink.discarding() if self.network_flags.dry_run else nullcontext()
        with muted:
            stage = Stage.VALIDATE
            while stage not in TERMINAL_STAGES:
                self.result.stages.append(stage)
                logger.debug("entering stage %s", stage.value)
                stage = self._run_stage(stage)
            self.result.stages.append(stage)

            if stage is Stage.DONE and not self.result.dry_run:
                self.sink.success(f"{self.spec.metadata.log_string()} is ready")
        self._notify()
        return self.result

    def _run_stage(self, stage: Stage) -> Stage:
        handler = self._handlers[stage]
        if stage in (Stage.VALIDATE, Stage.RESOLVE_NETWORK, Stage.BUILD_PLAN):
            # nothing exists yet: fail fast
            return handler()
        try:
            return handler()
        except Exception as e:
            logger.debug("stage %s raised", stage.value, exc_info=True)
            self.result.errors.append(e)
            self.sink.critical(f"{stage.value}: {e}")
            self._advise_cleanup()
            return Stage.FAILED

    def _notify(self) -> None:
        webhook = self.options.slack_webhook
        if not webhook or self.result.dry_run:
            return
        if self.result.succeeded:
            message = f"[eksforge] cluster {self.result.cluster_name} ({self.result.region}) created"
        else:
            message = (f"[eksforge] cluster {self.result.cluster_name} ({self.result.region}) failed "
                       f"with {len(self.result.errors)} error(s)")
        send_slack_alert(webhook, message)

    def _advise_cleanup(self) -> None:
        meta = self.spec.metadata
        self.sink.info(f"to cleanup resources, run 'eksforge delete cluster --region={meta.region} --name={meta.name}'")

    def _report_failures(self, failures, headline: str) -> None:
        self.sink.warning(f"{len(failures)} error(s) occurred {headline}")
        for failure in failures:
            if failure.is_capability_error:
                self.sink.critical(getattr(failure.payload, "message", str(failure.payload)))
            self.sink.critical(str(failure))
        self.result.errors.extend(failures)

    # -- stages -----------------------------------------------------------

    def _validate(self) -> Stage:
        self.spec = validate_spec(self.spec)
        meta = self.spec.metadata
        self.sink.info(f"🌍 Using region {meta.region}")
        self.sink.info(f"using Kubernetes version {meta.version}")
        if self.spec.private_cluster:
            self.sink.warning("fully private cluster requested, public endpoint access will be disabled once nodes are ready")
        elif self.spec.vpc.private_access and not self.spec.vpc.public_access:
            self.sink.warning(
                "only private access to the Kubernetes API is enabled, node readiness and addon steps "
                "must run from inside the cluster VPC"
            )
        return Stage.RESOLVE_NETWORK

    def _resolve_network(self) -> Stage:
        self.network = resolve_network(self.spec, self.network_flags, self.provider, self.sink)
        self.result.network = self.network
        if self.network.zones:
            self.spec = replace(self.spec, availability_zones=tuple(self.network.zones))
        if self.network.is_new_vpc() and self.network.cidr:
            self.spec = replace(self.spec, vpc=replace(self.spec.vpc, cidr=self.network.cidr))
        logger.debug("cfg = %s", redact_sensitive_data(spec_to_dict(self.spec)))

        if self.network.dry_run:
            self.sink.write(yaml.safe_dump(spec_to_dict(self.spec), default_flow_style=False, sort_keys=False))
            return Stage.DONE
        return Stage.BUILD_PLAN

    def _build_plan(self) -> Stage:
        builder = PlanBuilder(self.provider, self.sink, self.options.features)
        pre_addons, self.deferred_addons = builder.build_addon_plans(self.spec)
        post_cluster = builder.build_post_cluster_creation_plan(self.spec, pre_addons)
        self.plan = builder.build_cluster_plan(self.spec, self.network, post_cluster_creation=post_cluster)

        meta = self.spec.metadata
        self.sink.info(f"🚀 Creating {meta.log_string()}")
        self.sink.info(
            f"will create a CloudFormation stack for cluster itself and "
            f"{len(self.spec.nodegroups)} nodegroup stack(s), "
            f"{len(self.spec.managed_nodegroups)} managed nodegroup stack(s)"
        )
        self.sink.info(
            f"if you encounter any issues, check CloudFormation console or try "
            f"'aws cloudformation describe-stacks --region={meta.region}'"
        )
        self.result.plan_description = self.plan.describe()
        self.sink.info(self.result.plan_description)
        return Stage.EXECUTE

    def _execute(self) -> Stage:
        failures = self.plan.execute()
        if not failures:
            return Stage.WRITE_CREDENTIALS

        self._report_failures(failures, "and cluster hasn't been created properly, you may wish to check CloudFormation console")
        self._advise_cleanup()

        # node groups are the last stage of the plan, so failures confined to
        # them mean the control plane is up and surviving groups can join
        if all(isinstance(f.task, NodeGroupCreationTask) for f in failures):
            self.result.failed_nodegroups = [f.task.nodegroup.name for f in failures]
            self.sink.warning(
                f"continuing with the remaining nodegroups, failed: {', '.join(self.result.failed_nodegroups)}"
            )
            return Stage.WRITE_CREDENTIALS
        return Stage.FAILED

    def _write_credentials(self) -> Stage:
        meta = self.spec.metadata
        cluster = self.provider.describe_cluster(meta.name)
        username = self.provider.caller_identity()
        config = kubeconfig.build(
            self.spec, cluster, username,
            authenticator_role_arn=self.options.authenticator_role_arn,
            profile=self.options.profile,
        )
        self.context = config["current-context"]

        if self.options.write_kubeconfig:
            path = self.options.kubeconfig_path or kubeconfig.default_path()
            try:
                self.result.kubeconfig_path = kubeconfig.write(path, config, self.options.set_context)
                self.sink.success(f"saved kubeconfig as {self.result.kubeconfig_path!r}")
            except OSError as e:
                self.sink.warning(
                    f"unable to write kubeconfig {path}, please retry with "
                    f"'aws eks update-kubeconfig --name {meta.name} --region {meta.region}': {e}"
                )

        self.kube = self.kube_factory(config, self.context)
        return Stage.AUTHORIZE_AND_AWAIT_NODES

    def _authorize_and_await_nodes(self) -> Stage:
        failed = set(self.result.failed_nodegroups)
        nodegroups = [ng for ng in self.spec.all_nodegroups if ng.name not in failed]
        timeout = self.options.node_ready_timeout
        tree = build_readiness_plan(self.provider, self.kube, self.spec, nodegroups, timeout, self.sink)

        failures = []
        if tree.length:
            self.sink.info(tree.describe())
            failures = tree.execute()
        not_ready = {f.task.nodegroup.name for f in failures if hasattr(f.task, "nodegroup")}
        self.result.ready_nodegroups = [ng.name for ng in nodegroups if ng.name not in not_ready]

        if failures:
            self._report_failures(failures, "while waiting for nodegroups")
            self._advise_cleanup()
            return Stage.FAILED
        if failed:
            return Stage.FAILED

        self.sink.success(f"all EKS cluster resources for {self.spec.metadata.name!r} have been created")
        return Stage.RUN_DEFERRED_ADDONS

    def _run_deferred_addons(self) -> Stage:
        tree = self.deferred_addons or TaskTree(kind=Kind.PARALLEL, label="create addons")
        features = self.options.features
        plugins = device_plugin_tasks(
            self.kube, self.spec,
            install_nvidia=features.install_nvidia_device_plugin,
            install_neuron=features.install_neuron_device_plugin,
            sink=self.sink,
        )
        if plugins:
            tree.append(TaskGroup(Kind.PARALLEL, plugins, label="install device plugins"))
        if not tree.length:
            return Stage.GITOPS_BOOTSTRAP

        self.sink.info(tree.describe())
        failures = tree.execute()
        if failures:
            self._report_failures(failures, "while creating addons")
            return Stage.FAILED
        return Stage.GITOPS_BOOTSTRAP

    def _gitops_bootstrap(self) -> Stage:
        if self.spec.gitops is None:
            return Stage.CHECK_CLIENT_TOOLS

        self.sink.info("gitops configuration detected, setting installer to Flux v2")
        installer = self.gitops_factory(self.spec.gitops, self.result.kubeconfig_path, self.context)
        installer.run()

        if self.options.gitops_short_circuit:
            skipped = [Stage.CHECK_CLIENT_TOOLS.value]
            if self.spec.private_cluster:
                skipped.append(Stage.PRIVATE_LOCKDOWN.value)
                self.sink.warning(
                    "public endpoint access was left enabled because the GitOps bootstrap ends the run; "
                    "set EKSFORGE_GITOPS_SHORT_CIRCUIT=false to run the remaining stages"
                )
            self.sink.info(f"GitOps bootstrap complete, skipping: {', '.join(skipped)}")
            return Stage.DONE
        return Stage.CHECK_CLIENT_TOOLS

    def _check_client_tools(self) -> Stage:
        try:
            self.client_check(self.result.kubeconfig_path, self.context)
        except (OSError, subprocess.CalledProcessError) as e:
            self.sink.critical(str(e))
            self.sink.info("cluster should be functional despite missing (or misconfigured) client binaries")
        return Stage.PRIVATE_LOCKDOWN

    def _private_lockdown(self) -> Stage:
        if not self.spec.private_cluster:
            return Stage.DONE
        name = self.spec.metadata.name
        self.sink.info("disabling public endpoint access for the cluster")
        self.provider.update_cluster_endpoints(name, public_access=False, private_access=True)
        self.sink.info(
            f"fully private cluster {name!r} has been created. For subsequent operations, eksforge must be run "
            "from within the cluster's VPC, a peered VPC or some other means like AWS Direct Connect"
        )
        return Stage.DONE
