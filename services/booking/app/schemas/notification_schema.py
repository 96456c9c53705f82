from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ResourceData(BaseModel):
    id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ChangeNotification(BaseModel):
    """One entry of the ``value`` array Microsoft Graph POSTs to the webhook."""
    subscription_id: str = Field(alias="subscriptionId")
    client_state: Optional[str] = Field(default=None, alias="clientState")
    change_type: str = Field(alias="changeType")
    resource: Optional[str] = None
    resource_data: Optional[ResourceData] = Field(default=None, alias="resourceData")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def event_id(self) -> Optional[str]:
        if self.resource_data is None:
            return None
        return self.resource_data.id


class NotificationBatch(BaseModel):
    value: List[dict] = Field(default_factory=list)
