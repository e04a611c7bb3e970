"""DAO 模块

提供数据访问对象，统一管理数据库操作
"""

from plantdiag.dao.base import BaseDAO
from plantdiag.dao.plant_dao import PlantDAO, PlantRecordProvider
from plantdiag.dao.session_dao import SessionDAO

__all__ = [
    "BaseDAO",
    "PlantDAO",
    "PlantRecordProvider",
    "SessionDAO",
]
