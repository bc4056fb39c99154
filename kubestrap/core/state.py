from typing import Optional


class RuntimeConfig:
    """
    Singleton class to hold global runtime configurations.
    """
    VERBOSE: bool = False
    CONFIG_FILE: str = "cluster_config.yaml"
    INVENTORY_DIR: Optional[str] = None


config = RuntimeConfig()
