"""Configuration loading and environment variable parsing for kernel-vm-runner."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kernel_vm.constants import (
    DEFAULT_BASE_IMAGE,
    DEFAULT_BASE_IMAGE_URL,
    DEFAULT_BOOT_WAIT_ATTEMPTS,
    DEFAULT_BOOT_WAIT_INTERVAL,
    DEFAULT_CPUS,
    DEFAULT_DISK_IMAGE,
    DEFAULT_DISK_SIZE,
    DEFAULT_DOWNLOAD_RETRIES,
    DEFAULT_LAUNCH_GRACE,
    DEFAULT_LOGIN_USER,
    DEFAULT_MEMORY_MB,
    DEFAULT_OUT_DIRS,
    DEFAULT_PASSWORD,
    DEFAULT_QEMU_BINARY,
    DEFAULT_SEED_ISO,
    DEFAULT_SSH_PORT,
    DEFAULT_TESTS_DIR,
    DEFAULT_VM_NAME,
    GUEST_SSH_PORT,
    PACKAGE_ROOT,
    SSH_HOST,
    SUPPORTED_VARIANTS,
    TAG_HOST_OUT,
    TAG_HOST_TESTS,
    TRUTHY,
    VARIANT_FULL,
)
from kernel_vm.exceptions import ConfigError
from kernel_vm.models import RunnerConfig, SharedFolder
from kernel_vm.utils import (
    get_env,
    log,
    parse_int,
    parse_seconds,
    validate_disk_size,
)


def load_config_file(config_path: Path) -> Dict[str, str]:
    """Read a YAML mapping of defaults keyed by lower-cased env var names."""
    if not config_path.exists():
        raise ConfigError(f"Config file missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a YAML mapping, got {type(data).__name__}")
    return {str(key).lower(): str(value) for key, value in data.items() if value is not None}


def parse_env(install_kernel: bool = False, run_tests: bool = False) -> RunnerConfig:
    file_values: Dict[str, str] = {}
    config_file = get_env("VM_CONFIG_FILE")
    if config_file:
        file_values = load_config_file(Path(config_file).expanduser())
        log("DEBUG", f"Loaded {len(file_values)} setting(s) from {config_file}")

    def setting(name: str, default: Optional[str] = None) -> Optional[str]:
        value = get_env(name)
        if value is not None:
            return value
        return file_values.get(name.lower(), default)

    def flag(name: str, default: bool) -> bool:
        raw = setting(name)
        if raw is None:
            return default
        return raw.strip().lower() in TRUTHY

    variant = (setting("VM_VARIANT", VARIANT_FULL) or VARIANT_FULL).strip().lower()
    if variant not in SUPPORTED_VARIANTS:
        supported = ", ".join(sorted(SUPPORTED_VARIANTS))
        raise ConfigError(f"Unsupported VM_VARIANT '{variant}'. Supported: {supported}")

    work_dir_raw = setting("VM_WORK_DIR")
    if work_dir_raw:
        base_dir = Path(work_dir_raw).expanduser().resolve()
    elif variant == VARIANT_FULL:
        base_dir = PACKAGE_ROOT
    else:
        base_dir = Path.cwd()

    def path_setting(name: str, default: Path) -> Path:
        raw = setting(name)
        candidate = Path(raw).expanduser() if raw else default
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        return candidate

    vm_name = (setting("VM_NAME", DEFAULT_VM_NAME) or DEFAULT_VM_NAME).strip()
    if not vm_name:
        raise ConfigError("VM_NAME must not be empty")

    disk_image = path_setting("DISK_IMAGE", Path(DEFAULT_DISK_IMAGE))
    base_image = path_setting("BASE_IMAGE", Path(DEFAULT_BASE_IMAGE))
    base_image_url = setting("BASE_IMAGE_URL", DEFAULT_BASE_IMAGE_URL) or DEFAULT_BASE_IMAGE_URL
    seed_iso = path_setting("SEED_ISO", Path(DEFAULT_SEED_ISO))
    out_dir = path_setting("OUT_DIR", DEFAULT_OUT_DIRS[variant])
    console_log_raw = setting("CONSOLE_LOG")
    console_log = path_setting("CONSOLE_LOG", Path()) if console_log_raw else None

    shared: List[SharedFolder] = [SharedFolder(source=out_dir, tag=TAG_HOST_OUT)]
    if variant == VARIANT_FULL:
        tests_dir = path_setting("TESTS_DIR", Path(DEFAULT_TESTS_DIR))
        shared.append(SharedFolder(source=tests_dir, tag=TAG_HOST_TESTS))

    memory_mb = parse_int("MEMORY", setting("MEMORY", DEFAULT_MEMORY_MB) or DEFAULT_MEMORY_MB, min_val=128)
    cpus = parse_int("CPUS", setting("CPUS", DEFAULT_CPUS) or DEFAULT_CPUS)
    disk_size = validate_disk_size((setting("DISK_SIZE", DEFAULT_DISK_SIZE) or DEFAULT_DISK_SIZE).strip())
    ssh_port = parse_int(
        "SSH_PORT", setting("SSH_PORT", DEFAULT_SSH_PORT) or DEFAULT_SSH_PORT, min_val=1, max_val=65535
    )

    login_user = (setting("GUEST_USER", DEFAULT_LOGIN_USER) or "").strip()
    if not login_user:
        raise ConfigError("GUEST_USER must not be empty")
    password = setting("GUEST_PASSWORD", DEFAULT_PASSWORD) or ""
    if not password:
        raise ConfigError("GUEST_PASSWORD must not be empty")

    boot_wait_attempts = parse_int(
        "BOOT_WAIT_ATTEMPTS", setting("BOOT_WAIT_ATTEMPTS", DEFAULT_BOOT_WAIT_ATTEMPTS) or DEFAULT_BOOT_WAIT_ATTEMPTS
    )
    boot_wait_interval = parse_seconds(
        "BOOT_WAIT_INTERVAL", setting("BOOT_WAIT_INTERVAL", DEFAULT_BOOT_WAIT_INTERVAL) or DEFAULT_BOOT_WAIT_INTERVAL
    )
    launch_grace = parse_seconds(
        "LAUNCH_GRACE", setting("LAUNCH_GRACE", DEFAULT_LAUNCH_GRACE[variant]) or DEFAULT_LAUNCH_GRACE[variant]
    )
    download_retries = parse_int(
        "DOWNLOAD_RETRIES", setting("DOWNLOAD_RETRIES", DEFAULT_DOWNLOAD_RETRIES) or DEFAULT_DOWNLOAD_RETRIES
    )

    return RunnerConfig(
        variant=variant,
        vm_name=vm_name,
        base_dir=base_dir,
        disk_image=disk_image,
        base_image=base_image,
        base_image_url=base_image_url,
        seed_iso=seed_iso,
        out_dir=out_dir,
        shared_folders=tuple(shared),
        memory_mb=memory_mb,
        cpus=cpus,
        disk_size=disk_size,
        ssh_host=SSH_HOST,
        ssh_port=ssh_port,
        guest_ssh_port=GUEST_SSH_PORT,
        login_user=login_user,
        password=password,
        boot_wait_attempts=boot_wait_attempts,
        boot_wait_interval=boot_wait_interval,
        launch_grace=launch_grace,
        qemu_binary=setting("QEMU_BINARY", DEFAULT_QEMU_BINARY) or DEFAULT_QEMU_BINARY,
        enable_kvm=flag("ENABLE_KVM", True),
        console_log=console_log,
        download_retries=download_retries,
        install_kernel=install_kernel,
        run_tests=run_tests,
    )
