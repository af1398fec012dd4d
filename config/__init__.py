from .config_loader import Config, ConfigError, SectionProxy, config
from .symbols import SymbolConfig, load_symbol_configs

__all__ = ['config', 'Config', 'ConfigError', 'SectionProxy', 'SymbolConfig', 'load_symbol_configs']
