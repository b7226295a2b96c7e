"""
持久化访问层测试
"""
from stencilpro import storage
from stencilpro.models import ChatRole


def add_image(db, owner_id, name="a.png"):
    return storage.create_image(
        db,
        owner_id=owner_id,
        url=f"/uploads/{name}",
        filename=name,
        size=100,
        width=10,
        height=10,
    )


class TestUsers:

    def test_get_user(self, db_session, test_user):
        assert storage.get_user(db_session, test_user.id).email == "test@example.com"
        assert storage.get_user(db_session, 9999) is None
        assert storage.get_user_by_email(db_session, "test@example.com").id == test_user.id

    def test_update_profile_keeps_unset_fields(self, db_session, test_user):
        storage.update_user_profile(db_session, test_user, first_name="Ada")
        storage.update_user_profile(db_session, test_user, last_name="Ink")
        assert test_user.display_name == "Ada Ink"

    def test_set_stripe_customer(self, db_session, test_user):
        storage.set_stripe_customer(db_session, test_user, "cus_123")
        assert storage.get_user(db_session, test_user.id).stripe_customer_id == "cus_123"


class TestImages:

    def test_get_user_image_checks_owner(self, db_session, test_user, other_user):
        image = add_image(db_session, test_user.id)
        assert storage.get_user_image(db_session, test_user.id, image.id).id == image.id
        assert storage.get_user_image(db_session, other_user.id, image.id) is None
        assert storage.get_image(db_session, image.id).owner_id == test_user.id

    def test_list_user_images(self, db_session, test_user, other_user):
        first = add_image(db_session, test_user.id, "1.png")
        second = add_image(db_session, test_user.id, "2.png")
        add_image(db_session, other_user.id, "3.png")

        assert [i.id for i in storage.list_user_images(db_session, test_user.id)] == [second.id, first.id]


class TestChatMessages:

    def test_messages_in_creation_order(self, db_session, test_user):
        """同一时间创建的消息按插入顺序返回"""
        contents = [f"message {i}" for i in range(10)]
        for i, content in enumerate(contents):
            role = ChatRole.USER if i % 2 == 0 else ChatRole.ASSISTANT
            storage.create_chat_message(db_session, test_user.id, role, content)

        messages = storage.list_chat_messages(db_session, test_user.id)
        assert [m.content for m in messages] == contents
        assert messages[1].role == ChatRole.ASSISTANT

    def test_messages_scoped_by_image(self, db_session, test_user):
        image = add_image(db_session, test_user.id)
        storage.create_chat_message(db_session, test_user.id, ChatRole.USER, "general")
        storage.create_chat_message(db_session, test_user.id, ChatRole.USER, "about image", image_id=image.id)

        scoped = storage.list_chat_messages(db_session, test_user.id, image.id)
        assert [m.content for m in scoped] == ["about image"]

    def test_clear_messages(self, db_session, test_user, other_user):
        storage.create_chat_message(db_session, test_user.id, ChatRole.USER, "mine")
        storage.create_chat_message(db_session, other_user.id, ChatRole.USER, "theirs")

        assert storage.clear_chat_messages(db_session, test_user.id) == 1
        assert storage.list_chat_messages(db_session, test_user.id) == []
        assert len(storage.list_chat_messages(db_session, other_user.id)) == 1


class TestEdits:

    def test_create_edit_requires_commit(self, db_session, test_user):
        edit = storage.create_edit(db_session, user_id=test_user.id, result_url="u", prompt="p")
        db_session.rollback()
        assert edit not in db_session
        assert storage.list_user_edits(db_session, test_user.id) == []

    def test_list_image_edits(self, db_session, test_user):
        image = add_image(db_session, test_user.id)
        storage.create_edit(db_session, user_id=test_user.id, result_url="u1", prompt="plain")
        storage.create_edit(db_session, user_id=test_user.id, result_url="u2", prompt="ref", base_image_id=image.id)
        db_session.commit()

        assert [e.prompt for e in storage.list_image_edits(db_session, image.id)] == ["ref"]
        assert len(storage.list_user_edits(db_session, test_user.id)) == 2
