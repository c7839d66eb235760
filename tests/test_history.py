from __future__ import annotations

from datetime import timedelta

from app.services.history import HistoryService
from app.utils.time import utcnow


def test_history_is_capped_per_kind_and_newest_first(run_db, make_user) -> None:
    async def scenario(sessionmaker):
        async with sessionmaker() as session:
            user = await make_user(session)
            history = HistoryService(session, limit=3)
            start = utcnow()
            for index in range(5):
                await history.append(user.id, "image", f"https://cdn.test/{index}.png", "p", timestamp=start + timedelta(seconds=index))
            await history.append(user.id, "video", "https://cdn.test/v.mp4", "p", timestamp=start)
            await session.commit()

            images = await history.list(user.id, "image")
            assert [entry.url for entry in images] == [f"https://cdn.test/{i}.png" for i in (4, 3, 2)]
            assert len(await history.list(user.id, "video")) == 1

            assert await history.delete(user.id, "video", images[0].id) is False
            assert await history.delete(user.id, "image", images[0].id) is True
            assert await history.clear(user.id, "image") == 2
            await session.commit()
            assert await history.list(user.id, "image") == []
            assert len(await history.list(user.id, "video")) == 1

    run_db(scenario)
