import pytest

from follows import FollowManager
from utils.error_handler import StoreUnavailable, ValidationError


@pytest.fixture
def follows(store, notifier):
    return FollowManager(store, notifier)


@pytest.mark.asyncio
async def test_follow_user_counts_and_notifies(follows, users, push_client):
    assert await follows.follow_user("alice", "bob") is True

    assert await follows.is_following("alice", "bob") is True
    assert await follows.is_following("bob", "alice") is False
    assert users.docs("users")["alice"]["followingCount"] == 1
    assert users.docs("users")["bob"]["followersCount"] == 1

    notifications = list(users.docs("notifications").values())
    assert len(notifications) == 1
    assert notifications[0]["type"] == "follow_request"
    assert notifications[0]["recipientId"] == "bob"
    assert notifications[0]["message"] == "Alice started following you"
    assert push_client.sent[0]["to"] == "ExponentPushToken[bob]"


@pytest.mark.asyncio
async def test_follow_twice_is_noop(follows, users):
    assert await follows.follow_user("alice", "bob") is True
    assert await follows.follow_user("alice", "bob") is False

    assert users.docs("users")["bob"]["followersCount"] == 1
    assert len(users.docs("notifications")) == 1


@pytest.mark.asyncio
async def test_follow_validation(follows):
    with pytest.raises(ValidationError):
        await follows.follow_user("alice", "alice")
    with pytest.raises(ValidationError):
        await follows.follow_user("", "bob")


@pytest.mark.asyncio
async def test_unfollow_user(follows, users):
    await follows.follow_user("alice", "bob")

    assert await follows.unfollow_user("alice", "bob") is True
    assert await follows.unfollow_user("alice", "bob") is False
    assert await follows.is_following("alice", "bob") is False
    assert users.docs("users")["alice"]["followingCount"] == 0
    assert users.docs("users")["bob"]["followersCount"] == 0


@pytest.mark.asyncio
async def test_follow_survives_counter_failure(follows, users):
    users.fail("increment_fields", "users", StoreUnavailable("users down"))

    assert await follows.follow_user("carol", "bob") is True
    assert await follows.is_following("carol", "bob") is True
    assert len(users.docs("notifications")) == 1


@pytest.mark.asyncio
async def test_followers_and_following_lists(follows, users):
    await follows.follow_user("alice", "bob")
    await follows.follow_user("carol", "bob")
    await follows.follow_user("bob", "alice")

    followers = await follows.get_followers("bob")
    assert {f.follower_id for f in followers} == {"alice", "carol"}

    following = await follows.get_following("bob")
    assert [f.following_id for f in following] == ["alice"]
