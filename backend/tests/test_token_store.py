from notification_core.token_store import (
    delete_tokens,
    get_display_name,
    get_language,
    get_push_tokens,
    get_verified_email,
)


def test_delete_tokens_batches_and_ignores_unknown(helpers):
    helpers["add_token"]("user-1", "tok-a")
    helpers["add_token"]("user-1", "tok-b")
    helpers["add_token"]("user-2", "tok-c")

    removed = delete_tokens(helpers["db"], ["tok-a", "tok-c", "tok-a", "tok-missing", ""])

    assert removed == 2
    assert helpers["tokens_of"]("user-1") == ["tok-b"]
    assert helpers["tokens_of"]("user-2") == []
    assert delete_tokens(helpers["db"], []) == 0


def test_get_push_tokens_scoped_to_recipient(helpers):
    helpers["add_token"]("user-1", "tok-a")
    helpers["add_token"]("user-2", "tok-b")

    assert [row.token for row in get_push_tokens(helpers["db"], "user-1")] == ["tok-a"]
    assert get_push_tokens(helpers["db"], "user-3") == []


def test_profile_lookups(helpers):
    helpers["add_profile"]("user-1", email=" user1@example.com ", name="Uma", language="zh")
    helpers["add_profile"]("user-2", email="user2@example.com", verified=False)
    db = helpers["db"]

    assert get_verified_email(db, "user-1") == "user1@example.com"
    assert get_verified_email(db, "user-2") is None
    assert get_verified_email(db, "nobody") is None
    assert get_display_name(db, "user-1") == "Uma"
    assert get_display_name(db, "user-2") is None
    assert get_language(db, "user-1") == "zh"
    assert get_language(db, "nobody") == "en"
