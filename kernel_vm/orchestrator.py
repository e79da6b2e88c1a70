"""End-to-end sequencing: disk, seed, launch, SSH wait, optional kernel install."""

from __future__ import annotations

from typing import Callable, Optional

from kernel_vm.images import ArtifactPreparer, SeedImageBuilder
from kernel_vm.installer import KernelInstaller
from kernel_vm.launcher import VMLauncher
from kernel_vm.models import InstallContext, RunnerConfig, VMProcess
from kernel_vm.readiness import wait_for_ssh
from kernel_vm.remote import RemoteExecutor, SSHExecutor
from kernel_vm.tools import Hypervisor, ImageTool, IsoTool
from kernel_vm.utils import log


def default_executor_factory(cfg: RunnerConfig) -> RemoteExecutor:
    return SSHExecutor(cfg.ssh_host, cfg.ssh_port, cfg.login_user, cfg.password)


class Orchestrator:
    def __init__(
        self,
        cfg: RunnerConfig,
        image_tool: Optional[ImageTool] = None,
        iso_tool: Optional[IsoTool] = None,
        hypervisor: Optional[Hypervisor] = None,
        executor_factory: Optional[Callable[[RunnerConfig], RemoteExecutor]] = None,
    ) -> None:
        self.cfg = cfg
        self.preparer = ArtifactPreparer(cfg, image_tool)
        self.seed_builder = SeedImageBuilder(cfg, iso_tool)
        self.launcher = VMLauncher(cfg, hypervisor)
        self.executor_factory = executor_factory or default_executor_factory
        self.vm: Optional[VMProcess] = None
        self.install_result: Optional[InstallContext] = None

    def run(self) -> VMProcess:
        log("INFO", "Preparing VM disk and cloud image...")
        self.preparer.ensure_disk_image()
        self.seed_builder.ensure_seed_image()

        self.vm = self.launcher.launch()

        wait_for_ssh(
            self.cfg.ssh_host,
            self.cfg.ssh_port,
            self.cfg.login_user,
            self.cfg.password,
            attempts=self.cfg.boot_wait_attempts,
            interval=self.cfg.boot_wait_interval,
            is_alive=self.vm.is_alive,
        )

        if self.cfg.install_kernel:
            self.install_kernel()
        return self.vm

    def install_kernel(self) -> InstallContext:
        log("INFO", "Connecting via SSH to install the custom kernel...")
        with self.executor_factory(self.cfg) as executor:
            self.install_result = KernelInstaller(self.cfg, executor).install()
        log("INFO", "Kernel installation commands were sent to the VM.")
        return self.install_result
