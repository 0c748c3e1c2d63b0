import logging
import os
import shutil
from typing import List, Optional

from ..models import GitOpsSpec
from ..utils import run_command

logger = logging.getLogger("eksforge.gitops")

TOKEN_VARIABLES = {"github": "GITHUB_TOKEN", "gitlab": "GITLAB_TOKEN"}


class FluxInstaller:
    """Bootstrap Flux v2 into the new cluster from a Git repository."""

    def __init__(self, gitops: GitOpsSpec, kubeconfig_path: Optional[str] = None,
                 context: Optional[str] = None):
        if gitops.provider not in TOKEN_VARIABLES:
            raise ValueError(f"unsupported git provider {gitops.provider!r}, valid options: "
                             f"{', '.join(TOKEN_VARIABLES)}")
        self.gitops = gitops
        self.kubeconfig_path = kubeconfig_path
        self.context = context

    def _kube_args(self) -> List[str]:
        args = []
        if self.kubeconfig_path:
            args += ["--kubeconfig", self.kubeconfig_path]
        if self.context:
            args += ["--context", self.context]
        return args

    def bootstrap_command(self) -> List[str]:
        g = self.gitops
        cmd = [
            "flux", "bootstrap", g.provider,
            "--owner", g.owner,
            "--repository", g.repository,
            "--branch", g.branch,
            "--path", g.path,
        ]
        if g.personal:
            cmd.append("--personal")
        return cmd + self._kube_args()

    def run(self) -> None:
        if not shutil.which("flux"):
            raise FileNotFoundError("flux CLI not found in PATH")
        token_var = TOKEN_VARIABLES[self.gitops.provider]
        if not os.getenv(token_var):
            raise RuntimeError(f"{token_var} must be set to bootstrap Flux")

        logging.info("📦 Installing Flux v2...")
        run_command(["flux", "check", "--pre"] + self._kube_args())
        run_command(self.bootstrap_command())
        logging.info(f"✅ Flux bootstrapped from {self.gitops.owner}/{self.gitops.repository}")
