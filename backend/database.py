"""
Database - اتصال MongoDB عبر Motor
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'hr_attendance')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]


def get_db():
    """FastAPI dependency - يرجع قاعدة البيانات الحالية"""
    return db


async def ensure_indexes(database=None):
    """
    إنشاء الفهارس المطلوبة

    المفتاح الطبيعي (employee_id, date) فريد على مستوى التخزين،
    وعليه يعتمد منع التسجيل المزدوج عند الطلبات المتزامنة.
    """
    database = database if database is not None else db
    await database.daily_attendance.create_index(
        [("employee_id", 1), ("date", 1)],
        unique=True,
        name="employee_date_unique"
    )
    await database.daily_attendance.create_index([("date", -1)])
    await database.audit_logs.create_index([("entity_id", 1), ("timestamp", -1)])
