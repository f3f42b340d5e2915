"""Agent configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Host identity
    hostname: str = ""  # Socket hostname if not set
    public_ip: str = ""  # Auto-detect from default route if empty

    # Coordination store (etcd)
    etcd_endpoint: str = "http://127.0.0.1:2379"
    etcd_api_version: int = 3  # 2 or 3
    etcd_timeout: float = 5.0  # seconds per request
    etcd_retry_count: int = 3
    etcd_retry_delay: float = 2.0

    # Key layout
    flannel_prefix: str = "/coreos.com/network"
    config_prefix: str = "/flannel/network"

    # Overlay device
    overlay_device: str = "flannel.1"
    overlay_mtu: int = 1370
    overlay_network: str = "10.5.0.0/16"
    vni: int = 1

    # Local overrides
    host_gateway_map: str = ""  # "host_or_subnet:gateway,..."
    extra_routes: str = ""  # "subnet:gateway[:device],..."

    # Forwarding rules for overlay traffic
    manage_firewall: bool = True
    firewall_chain: str = "FLANNEL-FWD"

    # Loop and per-subsystem intervals (seconds)
    interval: int = 60
    fdb_update_interval: int = 120
    routes_update_interval: int = 120
    host_status_update_interval: int = 300
    host_status_cache_timeout: int = 60
    active_host_max_age: int = 600
    stale_host_max_age: int = 1800
    prune_interval: int = 3600

    # Connectivity probes
    conn_test_timeout: float = 3.0
    conn_retry_count: int = 3
    conn_retry_delay: float = 2.0
    conn_test_interval: int = 300

    # Health checks
    health_components: str = ""  # Comma list, empty = all
    component_cache_validity: int = 30
    disk_degraded_threshold: int = 20  # % free
    disk_critical_threshold: int = 5  # % free
    memory_degraded_threshold: int = 80  # % used
    memory_critical_threshold: int = 95  # % used
    cpu_degraded_load: float = 1.0  # 1-min load per CPU
    cpu_critical_load: float = 2.0
    traffic_ratio_threshold: float = 10.0
    traffic_min_bytes: int = 10000
    traffic_sustained_samples: int = 2

    # Recovery
    recovery_check_interval: int = 300
    interface_cooldown: int = 0
    container_cooldown: int = 900
    service_cooldown: int = 43200
    interface_max_attempts: int = 3
    container_max_attempts: int = 2
    service_max_attempts: int = 1
    verify_retries: int = 3
    verify_initial_wait: float = 15.0
    verify_backoff_step: float = 5.0
    history_retention: int = 2592000  # 30 days

    # Container runtime
    flannel_container_name: str = "flannel"
    flannel_images: str = "quay.io/coreos/flannel,flannelcni/flannel"
    container_health_timeout: int = 30
    docker_restart_timeout: int = 120

    # Local state (snapshots, recovery history, health status)
    state_dir: str = "/var/run/overlay-agent"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "json" or "text"

    # Local status API
    enable_status_api: bool = True
    status_host: str = "127.0.0.1"
    status_port: int = 8085

    class Config:
        env_prefix = "OVERLAY_AGENT_"


settings = Settings()
