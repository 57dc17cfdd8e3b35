"""Recording stand-ins for the messaging client used across the test suite."""
from typing import Dict, List, Optional, Set

from chatwarden.client import ChatClient
from chatwarden.errors import PermanentAPIError


class FakeChatClient(ChatClient):
    def __init__(self, admin_ids: Optional[Dict[int, Set[int]]] = None):
        self.admin_ids = admin_ids or {}
        self.deleted: List[tuple] = []
        self.sent: List[dict] = []
        self.removed: List[dict] = []
        self.added: List[tuple] = []
        self.fail_delete = False
        self.fail_remove = False
        self.fail_add = False
        self.fail_admin_list = False
        self.member_admin: Optional[bool] = None
        self._next_message_id = 1000

    async def delete_message(self, chat_id, message_id):
        if self.fail_delete:
            raise PermanentAPIError("delete rejected")
        self.deleted.append((chat_id, message_id))

    async def send_message(self, chat_id, text, buttons=None, silent=False):
        self._next_message_id += 1
        self.sent.append({"chat_id": chat_id, "text": text, "buttons": buttons, "silent": silent,
                          "message_id": self._next_message_id})
        return self._next_message_id

    async def remove_member(self, chat_id, user_id, block=False, until_ts=None):
        if self.fail_remove:
            raise PermanentAPIError("not enough rights to restrict/unrestrict chat member")
        self.removed.append({"chat_id": chat_id, "user_id": user_id, "block": block, "until_ts": until_ts})

    async def get_chat_admin_ids(self, chat_id):
        if self.fail_admin_list:
            raise PermanentAPIError("chat not found")
        return set(self.admin_ids.get(chat_id, set()))

    async def is_chat_admin(self, chat_id, user_id):
        if self.member_admin is None:
            raise PermanentAPIError("member lookup failed")
        return self.member_admin

    async def get_chat_title(self, chat_id):
        return f"Chat {chat_id}"

    async def add_member(self, chat_id, user_id):
        if self.fail_add:
            raise PermanentAPIError("user not found")
        self.added.append((chat_id, user_id))
