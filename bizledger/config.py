import os
import yaml
import logging
from pathlib import Path
from typing import Any, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from bizledger.modules.config_models import BusinessRulesConfig, ApiSettings

class EngineConfig(BaseModel):
    root_dir: Path

    # Fields derived from root_dir, calculated during initialization
    config_dir: Path = Field(default=None)
    log_dir: Path = Field(default=None)
    business_rules_path: Path = Field(default=None)
    env_path: Path = Field(default=None)

    _business_rules: Optional[BusinessRulesConfig] = None
    _api: Optional[ApiSettings] = None

    class Config:
        arbitrary_types_allowed = True

    def model_post_init(self, __context: Any) -> None:
        """Initialize dependent paths after root_dir is set."""
        if not self.config_dir: self.config_dir = self.root_dir / "config"
        if not self.log_dir: self.log_dir = self.root_dir / "logs"
        if not self.business_rules_path: self.business_rules_path = self.config_dir / "business_rules.yaml"
        if not self.env_path: self.env_path = self.root_dir / ".env"

    @property
    def business_rules(self) -> BusinessRulesConfig:
        if self._business_rules is None:
            raw = {}
            if self.business_rules_path.exists():
                with open(self.business_rules_path, 'r') as f:
                    raw = yaml.safe_load(f) or {}
            self._business_rules = BusinessRulesConfig(**raw)
        return self._business_rules

    @property
    def api(self) -> ApiSettings:
        """API settings from business_rules.yaml, overridden by the environment."""
        if self._api is None:
            if self.env_path.exists():
                load_dotenv(self.env_path)
            base = self.business_rules.api
            self._api = ApiSettings(
                base_url=os.getenv("BIZLEDGER_API_BASE_URL", base.base_url),
                token=os.getenv("BIZLEDGER_API_TOKEN", base.token),
                timeout=int(os.getenv("BIZLEDGER_API_TIMEOUT", base.timeout)),
            )
        return self._api

    @property
    def gst_rate(self) -> float:
        return self.business_rules.tax_rules.gst_rate

    @classmethod
    def load_default(cls) -> 'EngineConfig':
        package_dir = Path(__file__).parent
        root_dir = package_dir.parent
        return cls(root_dir=root_dir)

def setup_logging(config: EngineConfig):
    os.makedirs(config.log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.log_dir / 'bizledger.log'),
            logging.StreamHandler()
        ]
    )

# Singleton instance
config = EngineConfig.load_default()
