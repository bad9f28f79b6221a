"""Tests for mention scanning and resolution."""

import pytest

from saturn_federation.mentions import extract_mentions


class TestExtractMentions:
    """Tests for extract_mentions."""

    @pytest.mark.parametrize("text,expected", [
        ("@alice nice post", ["alice"]),
        ("hi @alice and @bob", ["alice", "bob"]),
        ("@bob@remote.example said hi", ["bob@remote.example"]),
        ("thanks @bob@remote.example.", ["bob@remote.example"]),
        ("@alice @alice @Alice", ["alice", "Alice"]),
        ("mail me at alice@example.com", []),
        ("no mentions here", []),
        ("", []),
        ("(@alice)", ["alice"]),
    ])
    def test_extract(self, text, expected):
        assert extract_mentions(text) == expected

    def test_none(self):
        assert extract_mentions(None) == []


class TestMentionResolver:
    """Tests for MentionResolver."""

    @pytest.mark.asyncio
    async def test_resolves_known_handles(self, services, session, alice, bob, carol):
        actors = await services.mentions.resolve(
            session, "@alice @nobody @carol@remote.example @bob"
        )
        assert [a.id for a in actors] == [alice.id, carol.id, bob.id]

    @pytest.mark.asyncio
    async def test_same_actor_once(self, services, session, alice):
        actors = await services.mentions.resolve(session, "@alice and @alice@example.com")
        assert [a.id for a in actors] == [alice.id]

    @pytest.mark.asyncio
    async def test_numeric_token_is_a_handle(self, services, session, alice):
        assert await services.mentions.resolve(session, f"@{alice.id}") == []
