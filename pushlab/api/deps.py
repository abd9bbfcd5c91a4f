from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pushlab.core.database import get_db
from pushlab.services.directory import SqlUserDirectory, UserDirectory


def get_user_directory(db: AsyncSession = Depends(get_db)) -> UserDirectory:
    return SqlUserDirectory(db)
