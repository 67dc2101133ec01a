# sayso/router.py

import logging
from typing import Any, Dict, Mapping

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .presence import PresenceDirectory

logger = logging.getLogger(__name__)


class NotificationRouter:
    """
    Turns successful likes and comments into notifications for the post's author.
    """
    def __init__(self, directory: "PresenceDirectory"):
        self.directory = directory
        logger.info("NotificationRouter initialized.")

    def post_liked(self, actor: Mapping[str, Any], post: Mapping[str, Any]) -> None:
        self._route(actor, post, "like", f"{self._display_name(actor)} liked your post")

    def post_commented(self, actor: Mapping[str, Any], post: Mapping[str, Any],
                       comment: Mapping[str, Any]) -> None:
        self._route(actor, post, "comment",
                    f"{self._display_name(actor)} commented on your post",
                    commentId=comment.get("id"))

    def _route(self, actor: Mapping[str, Any], post: Mapping[str, Any], kind: str,
               message: str, **extra: Any) -> None:
        recipient_id = post["user_id"]
        # Users are never notified about their own actions
        if recipient_id == actor["id"]:
            return

        payload: Dict[str, Any] = {"message": message, "type": kind, "postId": post["id"]}
        payload.update(extra)
        logger.info(f"Routing {kind} notification from {actor['id']} to {recipient_id}")
        self.directory.notify(recipient_id, payload)

    @staticmethod
    def _display_name(actor: Mapping[str, Any]) -> str:
        return actor.get("username") or actor.get("fullname") or "Someone"
