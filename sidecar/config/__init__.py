from .providers import ProviderConfig, ProviderRegistry
from .settings import SidecarSettings, get_settings

__all__ = ["ProviderConfig", "ProviderRegistry", "SidecarSettings", "get_settings"]
