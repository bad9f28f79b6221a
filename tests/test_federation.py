"""Tests for the federation inbox processor."""

import pytest
from sqlalchemy import select

from saturn_federation.activitypub_types import AS_PUBLIC
from saturn_federation.errors import ActorNotFoundError, InvalidInputError, MalformedActivityError
from saturn_federation.models import InboxActivity, InboxOutcome, NotificationType

from conftest import REMOTE_ACTOR_URI

CAROL = REMOTE_ACTOR_URI
DAVE = "https://other.example/users/dave"


@pytest.fixture
def deliver(services):
    """Deliver an activity to a local inbox in its own session."""

    async def deliver(activity: dict, handle: str = "alice"):
        async with services.session_maker() as s:
            return await services.inbox.process(s, activity, handle)

    return deliver


def follow(actor: str, target: str, activity_id: str = "https://remote.example/activities/f1") -> dict:
    return {"id": activity_id, "type": "Follow", "actor": actor, "object": target}


def undo(actor: str, inner: dict, activity_id: str) -> dict:
    return {"id": activity_id, "type": "Undo", "actor": actor, "object": inner}


class TestProcessBasics:
    """Tests for parsing, audit and redelivery."""

    @pytest.mark.asyncio
    async def test_malformed(self, deliver, alice):
        with pytest.raises(MalformedActivityError):
            await deliver({"type": "Follow"})

    @pytest.mark.asyncio
    async def test_unknown_target(self, deliver, alice):
        with pytest.raises(ActorNotFoundError):
            await deliver(follow(CAROL, alice.uri), handle="nobody")

    @pytest.mark.asyncio
    async def test_unknown_type_is_acknowledged(self, deliver, alice):
        ack = await deliver({"id": "x1", "type": "Block", "actor": CAROL, "object": alice.uri})

        assert ack.status == InboxOutcome.IGNORED
        assert "Block" in ack.reason

    @pytest.mark.asyncio
    async def test_activity_is_recorded(self, deliver, services, alice):
        await deliver(follow(CAROL, alice.uri))

        async with services.session_maker() as s:
            stored = (await s.execute(select(InboxActivity))).scalar_one()

        assert stored.activity_type == "Follow"
        assert stored.actor_uri == CAROL
        assert stored.target_handle == "alice"
        assert stored.outcome == InboxOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_redelivery_is_not_applied_twice(self, deliver, services, alice, read_notifications):
        first = await deliver(follow(CAROL, alice.uri))
        second = await deliver(follow(CAROL, alice.uri))

        assert first.status == InboxOutcome.APPLIED
        assert second.status == InboxOutcome.IGNORED
        assert second.reason == "duplicate"
        assert len(await read_notifications(alice.id)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_is_applied(
        self, deliver, services, session, alice, alice_post, carol, monkeypatch
    ):
        like = {"id": "l1", "type": "Like", "actor": CAROL, "object": alice_post.uri}
        like_post = services.posts.like_post
        attempts = []

        async def fails_once(session, post_id, actor_id):
            attempts.append(post_id)
            if len(attempts) == 1:
                raise RuntimeError("database went away")
            return await like_post(session, post_id, actor_id)

        monkeypatch.setattr(services.posts, "like_post", fails_once)

        with pytest.raises(RuntimeError):
            await deliver(like)

        ack = await deliver(like)
        assert ack.status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.like_count == 1

        again = await deliver(like)
        assert again.reason == "duplicate"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_ack_to_dict(self, deliver, alice):
        ack = await deliver(follow(CAROL, alice.uri))
        assert ack.to_dict() == {
            "status": "applied",
            "activityId": "https://remote.example/activities/f1",
        }


class TestFollow:
    """Tests for Follow and Undo{Follow}."""

    @pytest.mark.asyncio
    async def test_follow_creates_remote_actor_and_notifies(
        self, deliver, services, session, alice, read_notifications
    ):
        ack = await deliver(follow(DAVE, alice.uri))
        assert ack.status == InboxOutcome.APPLIED

        followers = await services.directory.get_followers(session, alice.id)
        assert [a.uri for a in followers] == [DAVE]
        assert followers[0].is_local is False

        notifications = await read_notifications(alice.id)
        assert [n.type for n in notifications] == [NotificationType.FOLLOW]
        assert notifications[0].actor_id == followers[0].id

    @pytest.mark.asyncio
    async def test_follow_of_non_local_target(self, deliver, alice):
        ack = await deliver(follow(CAROL, "https://elsewhere.example/users/x"))
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_already_following(self, deliver, alice):
        await deliver(follow(CAROL, alice.uri, "f1"))
        ack = await deliver(follow(CAROL, alice.uri, "f2"))
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_undo_follow(self, deliver, services, session, alice):
        await deliver(follow(CAROL, alice.uri, "f1"))
        ack = await deliver(undo(CAROL, follow(CAROL, alice.uri, "f1"), "u1"))

        assert ack.status == InboxOutcome.APPLIED
        assert await services.directory.count_followers(session, alice.id) == 0

    @pytest.mark.asyncio
    async def test_undo_by_other_actor_is_ignored(self, deliver, services, session, alice):
        await deliver(follow(CAROL, alice.uri, "f1"))
        ack = await deliver(undo(DAVE, follow(CAROL, alice.uri, "f1"), "u1"))

        assert ack.status == InboxOutcome.IGNORED
        assert await services.directory.count_followers(session, alice.id) == 1

    @pytest.mark.asyncio
    async def test_follow_from_unregistered_local_uri_is_ignored(self, deliver, services, session, alice):
        mallory = "https://example.com/users/mallory"

        ack = await deliver(follow(mallory, alice.uri))

        assert ack.status == InboxOutcome.IGNORED
        assert await services.directory.get_actor_by_uri(session, mallory) is None
        assert await services.directory.count_followers(session, alice.id) == 0

        actor = await services.directory.create_local_actor(session, "mallory")
        assert actor.is_local is True


class TestLikeAndAnnounce:
    """Tests for Like, Announce and their Undo forms."""

    @pytest.mark.asyncio
    async def test_like_local_post(self, deliver, services, session, alice, alice_post, read_notifications):
        ack = await deliver({"id": "l1", "type": "Like", "actor": CAROL, "object": alice_post.uri})

        assert ack.status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.like_count == 1
        assert [n.type for n in await read_notifications(alice.id)] == [NotificationType.LIKE]

    @pytest.mark.asyncio
    async def test_like_unknown_object(self, deliver, alice):
        ack = await deliver({"id": "l1", "type": "Like", "actor": CAROL, "object": "https://x/y"})
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_like_of_remote_post_is_ignored(self, deliver, services, session, alice, carol):
        remote_post = await services.posts.create_post(
            session, carol.id, "remote", None
        )
        ack = await deliver({"id": "l1", "type": "Like", "actor": DAVE, "object": remote_post.uri})
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_undo_like(self, deliver, services, session, alice, alice_post):
        like = {"id": "l1", "type": "Like", "actor": CAROL, "object": alice_post.uri}
        await deliver(like)
        ack = await deliver(undo(CAROL, like, "u1"))

        assert ack.status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.like_count == 0

    @pytest.mark.asyncio
    async def test_undo_like_never_liked(self, deliver, alice, alice_post, carol):
        like = {"id": "l1", "type": "Like", "actor": CAROL, "object": alice_post.uri}
        ack = await deliver(undo(CAROL, like, "u1"))
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_announce_and_undo(self, deliver, services, session, alice, alice_post, read_notifications):
        announce = {"id": "a1", "type": "Announce", "actor": CAROL, "object": alice_post.uri}

        assert (await deliver(announce)).status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.share_count == 1
        assert await read_notifications(alice.id) == []

        assert (await deliver(undo(CAROL, announce, "u1"))).status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.share_count == 0


class TestCreateNote:
    """Tests for Create{Note}."""

    def create(self, note: dict, activity_id: str = "c1", actor: str = CAROL) -> dict:
        return {"id": activity_id, "type": "Create", "actor": actor, "object": {"type": "Note", **note}}

    @pytest.mark.asyncio
    async def test_reply_becomes_comment(self, deliver, services, session, alice, alice_post, read_notifications):
        ack = await deliver(self.create({
            "id": f"{CAROL}/statuses/1",
            "content": "<p>Great post!</p>",
            "inReplyTo": alice_post.uri,
        }))

        assert ack.status == InboxOutcome.APPLIED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.reply_count == 1

        comments, total = await services.comments.list_comments(session, alice_post.id)
        assert total == 1
        assert comments[0]["content"] == "Great post!"
        assert comments[0]["uri"] == f"{CAROL}/statuses/1"
        assert comments[0]["author"]["handle"] == "carol@remote.example"

        assert [n.type for n in await read_notifications(alice.id)] == [NotificationType.COMMENT]

    @pytest.mark.asyncio
    async def test_same_reply_under_new_activity_id(self, deliver, services, session, alice, alice_post):
        note = {"id": f"{CAROL}/statuses/1", "content": "hi", "inReplyTo": alice_post.uri}
        await deliver(self.create(note, "c1"))
        ack = await deliver(self.create(note, "c2"))

        assert ack.status == InboxOutcome.IGNORED
        post = await services.posts.get_post(session, alice_post.id)
        assert post.reply_count == 1

    @pytest.mark.asyncio
    async def test_note_becomes_post_with_mentions(
        self, deliver, services, session, alice, bob, read_notifications
    ):
        ack = await deliver(self.create({
            "id": f"{CAROL}/statuses/2",
            "content": "<p>hello @alice</p>",
            "to": [AS_PUBLIC],
            "summary": "cw",
            "tag": [
                {"type": "Mention", "href": alice.uri},
                {"type": "Mention", "href": alice.uri},
                {"type": "Mention", "href": "https://elsewhere.example/users/zed"},
            ],
        }))

        assert ack.status == InboxOutcome.APPLIED
        post = await services.posts.get_post_by_uri(session, f"{CAROL}/statuses/2")
        assert post.content == "hello @alice"
        assert post.sensitive is True
        assert post.content_warning == "cw"

        notifications = await read_notifications(alice.id)
        assert [n.type for n in notifications] == [NotificationType.MENTION]
        assert notifications[0].post_id == post.id
        assert await read_notifications(bob.id) == []

    @pytest.mark.asyncio
    async def test_note_is_idempotent_on_uri(self, deliver, services, session, alice):
        note = {"id": f"{CAROL}/statuses/3", "content": "once"}
        await deliver(self.create(note, "c1"))
        ack = await deliver(self.create(note, "c2"))

        assert ack.status == InboxOutcome.IGNORED
        carol = await services.directory.resolve_actor(session, CAROL)
        assert len(await services.posts.list_posts_by_author(session, carol.id)) == 1

    @pytest.mark.asyncio
    async def test_empty_note_is_ignored(self, deliver, alice):
        ack = await deliver(self.create({"id": f"{CAROL}/statuses/4", "content": ""}))
        assert ack.status == InboxOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_embedded_actor_document(self, deliver, services, session, alice):
        activity = self.create({"id": f"{DAVE}/statuses/1", "content": "hi"}, actor=DAVE)
        activity["actor"] = {"id": DAVE, "type": "Person", "preferredUsername": "dave", "name": "Dave"}

        await deliver(activity)

        dave = await services.directory.resolve_actor(session, DAVE)
        assert dave.display_name == "Dave"


class TestCollections:
    """Tests for followers/following collections."""

    @pytest.mark.asyncio
    async def test_followers_collection(self, deliver, services, session, alice):
        await deliver(follow(CAROL, alice.uri, "f1"))
        await deliver(follow(DAVE, alice.uri, "f2"))

        collection = await services.inbox.followers_collection(session, "alice")
        assert collection["type"] == "OrderedCollection"
        assert collection["totalItems"] == 2
        assert collection["first"] == f"{alice.uri}/followers?page=1"

        page = await services.inbox.followers_collection(session, "alice", page=1)
        assert page["type"] == "OrderedCollectionPage"
        assert page["orderedItems"] == [CAROL, DAVE]
        assert "next" not in page

    @pytest.mark.asyncio
    async def test_pagination(self, services, session, alice):
        services.inbox.page_size = 1
        for i in range(2):
            remote = await services.directory.get_or_create_remote_actor(
                session, f"https://remote.example/users/r{i}"
            )
            await services.directory.follow(session, alice.id, remote.id)

        page = await services.inbox.following_collection(session, "alice", page=2)
        assert page["orderedItems"] == ["https://remote.example/users/r1"]
        assert page["prev"] == f"{alice.uri}/following?page=1"

    @pytest.mark.asyncio
    async def test_unknown_handle(self, services, session):
        with pytest.raises(ActorNotFoundError):
            await services.inbox.followers_collection(session, "nobody")

    @pytest.mark.asyncio
    async def test_invalid_page(self, services, session, alice):
        with pytest.raises(InvalidInputError):
            await services.inbox.following_collection(session, "alice", page=0)
