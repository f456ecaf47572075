from pydantic import BaseModel, Field
from typing import Optional

# --- Business Rules Models ---

class TaxRules(BaseModel):
    gst_rate: float = 0.10
    money_epsilon: float = 0.01
    currency: str = "AUD"

class ReportingRules(BaseModel):
    # Australian financial year starts on 1 July
    fy_start_month: int = Field(default=7, ge=1, le=12)
    fy_start_day: int = Field(default=1, ge=1, le=31)

class ListRules(BaseModel):
    page_number: int = 1
    page_size: int = 100

class ApiSettings(BaseModel):
    base_url: str = "http://127.0.0.1:3000"
    token: Optional[str] = None
    timeout: int = 15

class BusinessRulesConfig(BaseModel):
    tax_rules: TaxRules = Field(default_factory=TaxRules)
    reporting: ReportingRules = Field(default_factory=ReportingRules)
    lists: ListRules = Field(default_factory=ListRules)
    api: ApiSettings = Field(default_factory=ApiSettings)
