"""Plant DAO

植物档案的数据访问。诊断内核只通过 PlantRecordProvider.get_vitals 读取植物状况。
"""
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from plantdiag.dao.base import BaseDAO
from plantdiag.exceptions import NotFoundError
from plantdiag.models import Plant, PlantVitals, CareRequirements


class PlantRecordProvider(ABC):
    """植物档案提供方接口"""

    @abstractmethod
    def get_vitals(self, plant_id: str) -> PlantVitals:
        """
        获取植物当前状况

        Raises:
            NotFoundError: 植物不存在
        """
        pass


class PlantDAO(BaseDAO, PlantRecordProvider):
    """植物档案数据访问对象"""

    def add(self, name: str, care_requirements: Optional[CareRequirements] = None) -> Plant:
        """
        新增植物档案

        Args:
            name: 植物名称
            care_requirements: 养护需求（为空时使用默认值）

        Returns:
            新增的植物档案
        """
        plant = Plant(
            plant_id=f"plant_{uuid.uuid4().hex[:8]}",
            name=name,
            care_requirements=care_requirements or CareRequirements(),
        )
        with self.transaction(row_factory=False) as (conn, cursor):
            cursor.execute(
                """
                INSERT INTO plants (plant_id, name, care_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    plant.plant_id,
                    plant.name,
                    json.dumps(plant.care_requirements.model_dump(), ensure_ascii=False),
                    plant.created_at.isoformat(),
                ),
            )
        return plant

    def get(self, plant_id: str) -> Optional[Plant]:
        """获取植物档案，不存在返回 None"""
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                "SELECT plant_id, name, care_json, created_at FROM plants WHERE plant_id = ?",
                (plant_id,),
            )
            row = cursor.fetchone()
            return self._row_to_plant(row) if row else None

    def list_all(self) -> List[Plant]:
        """列出全部植物档案（按创建时间）"""
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                "SELECT plant_id, name, care_json, created_at FROM plants ORDER BY created_at, rowid"
            )
            return [self._row_to_plant(row) for row in cursor.fetchall()]

    def get_vitals(self, plant_id: str) -> PlantVitals:
        plant = self.get(plant_id)
        if plant is None:
            raise NotFoundError(f"植物不存在: {plant_id}")
        return plant.to_vitals()

    def _row_to_plant(self, row) -> Plant:
        return Plant(
            plant_id=row["plant_id"],
            name=row["name"],
            care_requirements=CareRequirements(**json.loads(row["care_json"])),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
