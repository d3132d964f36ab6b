from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..constants import PollTrigger
from .integration_schema import OptionValue


class PollJob(BaseModel):
    """A request to refresh one (integration, discriminator) cache line."""

    organization_id: str
    integration_id: str
    discriminator_id: str
    widget_options: Dict[str, OptionValue] = Field(default_factory=dict)

    # Set when the job came from a specific widget instance
    widget_config_id: Optional[str] = None
    widget_id: Optional[str] = None
    trigger: PollTrigger = PollTrigger.TIMER

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.integration_id, self.discriminator_id)
