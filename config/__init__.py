"""PyramidTrend Configuration Module"""
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings
from typing import Any, Dict, List, Literal, Optional, Union
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Config directory
CONFIG_DIR = Path(__file__).parent
CONFIG_FILE = CONFIG_DIR / "settings.yaml"

TIMEFRAMES = ("M1", "M5", "M15", "M30", "H1", "H4", "D1", "W1", "MN1")


class MT5Settings(BaseModel):
    """MetaTrader 5 connection settings"""
    login: Optional[int] = None
    password: Optional[str] = None
    server: Optional[str] = None
    terminal_path: Optional[str] = None


class RiskSettings(BaseModel):
    """Position sizing and initial stop/target"""
    risk_percent: float = Field(1.0, gt=0, le=100)
    sl_atr_multiplier: float = Field(1.5, gt=0)
    tp_atr_multiplier: float = Field(2.5, gt=0)


class PyramidSettings(BaseModel):
    """Pyramiding rules"""
    distance_pips: float = Field(120.0, ge=0)
    max_steps: int = Field(3, ge=1)


class ProtectionSettings(BaseModel):
    """Break-even, trailing and take-profit handling"""
    trailing_enabled: bool = True
    trailing_atr_multiplier: float = Field(1.0, gt=0)
    trailing_step_pips: float = Field(5.0, ge=0)
    break_even_atr_multiplier: float = Field(1.0, gt=0)
    break_even_buffer_pips: float = Field(2.0, ge=0)
    break_even_buffer_mode: Literal["fixed", "cost_adjusted"] = "fixed"
    commission_pips: float = Field(0.0, ge=0)
    partial_tp_percent: float = Field(50.0, ge=0, le=100)
    remove_target_after_pyramid: bool = True
    trail_target_on_bar_close: bool = False
    tp_trail_atr_multiplier: float = Field(2.0, gt=0)


class RuntimeSettings(BaseModel):
    """Event loop settings"""
    ticks_to_wait: int = Field(5, ge=0)
    label: str = "PyramidTrend_"
    poll_interval: float = Field(1.0, gt=0)
    history_bars: int = Field(1500, ge=50)


class TradingSettings(BaseModel):
    """General trading settings"""
    symbol: str = "EURUSD"
    timeframe: str = "H1"
    mode: Literal["demo", "live"] = "demo"
    enabled: bool = False

    @field_validator("timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in TIMEFRAMES:
            raise ValueError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
        return value

    @property
    def symbols(self) -> List[str]:
        """Comma separated symbol list, one runtime per symbol"""
        return [s.strip() for s in self.symbol.split(",") if s.strip()]


class LoggingSettings(BaseModel):
    """Log sinks"""
    level: str = "INFO"
    file: Optional[str] = "logs/pyramid_trend.log"
    json_format: bool = False


class Settings(BaseSettings):
    """Main configuration class"""
    mt5: MT5Settings = Field(default_factory=MT5Settings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    pyramid: PyramidSettings = Field(default_factory=PyramidSettings)
    protection: ProtectionSettings = Field(default_factory=ProtectionSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    trading: TradingSettings = Field(default_factory=TradingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    class Config:
        env_prefix = ""
        case_sensitive = False


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[Union[str, Path]] = None, use_env: bool = True) -> Settings:
    """Load configuration from YAML and environment variables

    Values are validated section by section; an invalid option raises
    pydantic.ValidationError.
    """
    settings = Settings()
    yaml_config = _read_yaml(Path(path) if path else CONFIG_FILE)

    # Update settings from YAML
    for section, values in yaml_config.items():
        if hasattr(settings, section) and isinstance(values, dict):
            section_obj = getattr(settings, section)
            merged = {**section_obj.model_dump(), **values}
            setattr(settings, section, type(section_obj).model_validate(merged))

    if not use_env:
        return settings

    # Override with environment variables
    mt5_login = os.getenv("MT5_LOGIN")
    if mt5_login:
        settings.mt5.login = int(mt5_login)
    settings.mt5.password = os.getenv("MT5_PASSWORD", settings.mt5.password)
    settings.mt5.server = os.getenv("MT5_SERVER", settings.mt5.server)
    settings.mt5.terminal_path = os.getenv("MT5_TERMINAL_PATH", settings.mt5.terminal_path)

    trading = settings.trading.model_dump()
    trading["enabled"] = os.getenv("TRADING_ENABLED", str(trading["enabled"])).lower() == "true"
    trading["mode"] = os.getenv("TRADING_MODE", trading["mode"])
    trading["symbol"] = os.getenv("SYMBOL", trading["symbol"])
    trading["timeframe"] = os.getenv("TIMEFRAME", trading["timeframe"])
    settings.trading = TradingSettings.model_validate(trading)

    if os.getenv("RISK_PERCENT"):
        risk = settings.risk.model_dump()
        risk["risk_percent"] = float(os.getenv("RISK_PERCENT"))
        settings.risk = RiskSettings.model_validate(risk)

    settings.logging.level = os.getenv("LOG_LEVEL", settings.logging.level)

    return settings


# Global config instance
config = load_config()
