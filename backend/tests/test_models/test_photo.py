import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.models.photo import ArchivalStatus, Photo, PhotoTag
from photovault.models.user import User


async def _user(db: AsyncSession) -> User:
    user = User(email="photos@example.com", password_hash="hash")
    db.add(user)
    await db.flush()
    return user


@pytest.mark.asyncio
async def test_photo_defaults_to_archived(db_session: AsyncSession):
    user = await _user(db_session)
    photo = Photo(
        user_id=user.id,
        storage_key=f"{user.id}/abc_cat.jpg",
        original_name="cat.jpg",
        mime_type="image/jpeg",
        size=1234,
    )
    db_session.add(photo)
    await db_session.commit()

    assert photo.status == ArchivalStatus.archived
    assert photo.restored_until is None
    assert photo.uploaded_at is not None
    await db_session.refresh(photo, ["tag_rows"])
    assert photo.tags == []


@pytest.mark.asyncio
async def test_tags_keep_duplicates(db_session: AsyncSession):
    user = await _user(db_session)
    photo = Photo(
        user_id=user.id,
        storage_key=f"{user.id}/abc_beach.jpg",
        original_name="beach.jpg",
        mime_type="image/jpeg",
        size=10,
        tag_rows=[PhotoTag(tag="summer"), PhotoTag(tag="summer"), PhotoTag(tag="sea")],
    )
    db_session.add(photo)
    await db_session.commit()

    assert sorted(photo.tags) == ["sea", "summer", "summer"]


@pytest.mark.asyncio
async def test_deleting_photo_removes_tags(db_session: AsyncSession):
    user = await _user(db_session)
    photo = Photo(
        user_id=user.id,
        storage_key=f"{user.id}/abc_dog.jpg",
        original_name="dog.jpg",
        mime_type="image/jpeg",
        size=10,
        tag_rows=[PhotoTag(tag="pets")],
    )
    db_session.add(photo)
    await db_session.commit()

    await db_session.delete(photo)
    await db_session.commit()

    count = await db_session.execute(select(func.count(PhotoTag.id)))
    assert count.scalar() == 0
