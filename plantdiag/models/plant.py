"""植物档案数据模型"""
from datetime import datetime
from typing import Dict, Any

from pydantic import BaseModel, Field


class CareRequirements(BaseModel):
    """养护需求"""

    light: str = "Medium indirect light"
    water: str = "Water when top inch of soil is dry"
    humidity: str = "Average humidity (40-50%)"
    temperature: str = "65-75°F (18-24°C)"
    care_instructions: str = ""


class PlantVitals(BaseModel):
    """植物当前状况（由植物档案提供方返回）"""

    plant_id: str
    name: str
    care_requirements: CareRequirements = Field(default_factory=CareRequirements)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlantVitals":
        return cls.model_validate(data)


class Plant(BaseModel):
    """植物档案"""

    plant_id: str
    name: str
    care_requirements: CareRequirements = Field(default_factory=CareRequirements)
    created_at: datetime = Field(default_factory=datetime.now)

    def to_vitals(self) -> PlantVitals:
        return PlantVitals(
            plant_id=self.plant_id,
            name=self.name,
            care_requirements=self.care_requirements,
        )
