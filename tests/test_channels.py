import pytest

from davchat.services.channels import ChannelResolver, channel_key


def test_channel_key_is_order_independent():
    assert channel_key("alice", "bob") == channel_key("bob", "alice") == "alice+bob"


def test_channel_key_escapes_separators():
    key = channel_key("a/b", "c+d")

    assert "/" not in key
    assert key == "a%2Fb+c%2Bd"
    assert channel_key("a+b", "c") != channel_key("a", "b+c")


@pytest.mark.parametrize(("a", "b"), [("", "bob"), ("alice", ""), ("alice", "alice")])
def test_channel_key_rejects_invalid_pairs(a, b):
    with pytest.raises(ValueError):
        channel_key(a, b)


def test_resolve_builds_paths_below_the_root():
    resolver = ChannelResolver(remote_root="/chat/")

    channel = resolver.resolve("bob", "alice")

    assert channel == resolver.resolve("alice", "bob")
    assert channel.participants == ("alice", "bob")
    assert channel.messages_path == "chat/messages/alice+bob"
    assert channel.files_path == "chat/files/alice+bob"
    assert channel.message_entry_path("m.json") == "chat/messages/alice+bob/m.json"
    assert channel.attachment_path("abc") == "chat/files/alice+bob/abc"
    assert resolver.messages_root == "chat/messages"


def test_peer_of():
    channel = ChannelResolver().resolve("alice", "bob")

    assert channel.includes("alice")
    assert not channel.includes("carol")
    assert channel.peer_of("alice") == "bob"
    assert channel.peer_of("bob") == "alice"
    with pytest.raises(ValueError):
        channel.peer_of("carol")


def test_resolver_from_settings(settings):
    settings.remote_root = "team"
    resolver = ChannelResolver.from_settings(settings)

    assert resolver.resolve("x", "y").messages_path == "team/messages/x+y"
