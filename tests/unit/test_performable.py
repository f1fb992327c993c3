"""
Unit tests for deferred method calls.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed.errors import SerializationError, ShardNotFound
from delayed.payload.codec import decode, encode
from delayed.payload.context import execution_context
from delayed.payload.performable import PerformableMethod, ShardedPerformableMethod, dump
from delayed.payload.shards import ShardRegistry
from sample_jobs import RandomObject, Story, StoryReader, VanishingRecordObject


async def _save_story(session_factory, text: str) -> int:
    async with session_factory() as session:
        story = Story(text=text)
        session.add(story)
        await session.commit()
        return story.id


class TestReferences:
    """Tests for class and record references."""

    def test_dump_class(self):
        """Test that classes become CLASS references."""
        assert dump(StoryReader) == "CLASS:sample_jobs:StoryReader"

    async def test_dump_record(self, db_session: AsyncSession):
        """Test that saved records become RECORD references."""
        story = Story(text="Once upon a time")
        db_session.add(story)
        await db_session.flush()

        assert dump(story) == f"RECORD:sample_jobs:Story:{story.id}"

    def test_dump_unsaved_record(self):
        """Test that unsaved records cannot be referenced."""
        with pytest.raises(SerializationError, match="has not been saved"):
            dump(Story(text="draft"))

    def test_dump_leaves_plain_values(self):
        """Test that other values are kept as they are."""
        assert dump("text") == "text"
        assert dump(3) == 3


class TestPerformableMethod:
    """Tests for PerformableMethod."""

    def test_requires_existing_method(self):
        """Test that construction fails for a missing method."""
        with pytest.raises(AttributeError, match="undefined method"):
            PerformableMethod(RandomObject(), "say_goodbye")

    def test_display_name_for_object(self):
        """Test that a call on a plain object has no known receiver name."""
        method = decode(encode(PerformableMethod(RandomObject(), "say_hello")))

        assert method.display_name == "Unknown#say_hello"

    def test_display_name_for_class(self):
        """Test the display name of a call on a class."""
        method = PerformableMethod(StoryReader, "read")
        assert method.display_name == "StoryReader.read"

    async def test_display_name_for_record(self, db_session: AsyncSession):
        """Test the display name of a call on a record."""
        story = Story(text="Once upon a time")
        db_session.add(story)
        await db_session.flush()

        assert PerformableMethod(story, "tell").display_name == "Story#tell"

    def test_display_name_unknown_target(self):
        """Test the display name when the target is a plain string."""
        method = PerformableMethod("text", "upper")

        assert method.display_name == "Unknown#upper"

    async def test_perform_on_object(self, db_session: AsyncSession):
        """Test running a deferred call on a plain object."""
        method = decode(encode(PerformableMethod(RandomObject(), "say_hello")))

        with execution_context(db_session):
            assert await method.perform() == "hello"

    async def test_perform_awaits_coroutines(self, db_session: AsyncSession):
        """Test that async methods are awaited."""
        method = PerformableMethod(RandomObject(), "say_hello_later")

        with execution_context(db_session):
            assert await method.perform() == "hello later"

    async def test_perform_on_record(self, session_factory, db_session: AsyncSession):
        """Test that records are loaded again when the call runs."""
        story_id = await _save_story(session_factory, "Once upon a time...")
        story = await db_session.get(Story, story_id)

        method = decode(encode(PerformableMethod(story, "tell")))
        assert method.object == f"RECORD:sample_jobs:Story:{story_id}"

        async with session_factory() as session:
            with execution_context(session):
                assert await method.perform() == "Once upon a time..."

    async def test_perform_with_record_argument(self, session_factory, db_session: AsyncSession):
        """Test that record arguments are loaded again when the call runs."""
        story_id = await _save_story(session_factory, "Once upon a time...")
        story = await db_session.get(Story, story_id)

        method = decode(encode(PerformableMethod(StoryReader(), "read", [story])))

        async with session_factory() as session:
            with execution_context(session):
                assert await method.perform() == "Epilog: Once upon a time..."

    async def test_perform_on_deleted_record(self, session_factory, db_session: AsyncSession):
        """Test that a call on a deleted record does nothing."""
        story_id = await _save_story(session_factory, "gone soon")
        story = await db_session.get(Story, story_id)
        method = PerformableMethod(story, "tell")

        await db_session.delete(story)
        await db_session.commit()

        async with session_factory() as session:
            with execution_context(session):
                assert await method.perform() is True

    async def test_perform_ignores_record_not_found(self, db_session: AsyncSession):
        """Test that RecordNotFound raised by the method is ignored."""
        method = PerformableMethod(VanishingRecordObject(), "throw")

        with execution_context(db_session):
            assert await method.perform() is True

    async def test_perform_outside_context(self, session_factory, db_session: AsyncSession):
        """Test that record references need an execution context."""
        story_id = await _save_story(session_factory, "no context")
        method = PerformableMethod(await db_session.get(Story, story_id), "tell")

        with pytest.raises(RuntimeError, match="No job execution context"):
            await method.perform()


class TestShardedPerformableMethod:
    """Tests for ShardedPerformableMethod."""

    async def test_perform_on_shard(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        db_session: AsyncSession,
    ):
        """Test that records are loaded from the payload's shard."""
        story_id = await _save_story(session_factory, "sharded tale")
        story = await db_session.get(Story, story_id)

        shards = ShardRegistry()
        shards.register(7, session_factory)
        method = decode(encode(ShardedPerformableMethod(7, story, "retell")))

        with execution_context(db_session, shard_locator=shards):
            assert await method.perform() == "SHARDED TALE"

    async def test_unknown_shard(self, db_session: AsyncSession):
        """Test that a missing shard raises ShardNotFound."""
        method = ShardedPerformableMethod(99, RandomObject(), "say_hello")

        with execution_context(db_session, shard_locator=ShardRegistry()):
            with pytest.raises(ShardNotFound, match="Shard not found"):
                await method.perform()

    async def test_no_shard_locator(self, db_session: AsyncSession):
        """Test that running without a shard locator raises ShardNotFound."""
        method = ShardedPerformableMethod(1, RandomObject(), "say_hello")

        with execution_context(db_session):
            with pytest.raises(ShardNotFound):
                await method.perform()
