from typing import Optional
from pydantic import BaseModel, ConfigDict

from readerpass.models.plan import Region


class RegionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    region_code: Region
    country_code: Optional[str] = None
    is_domestic: bool
    source: str = "lookup"  # lookup, default, dev_override
