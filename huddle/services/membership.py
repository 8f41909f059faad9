from typing import Optional

from sqlalchemy.orm import Session

from huddle.models.user import WorkspaceMember


def is_workspace_member(db: Session, workspace_id: str, user_id: Optional[str]) -> bool:
    if not user_id or not workspace_id:
        return False
    return (
        db.query(WorkspaceMember.id)
        .filter(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
        .first()
        is not None
    )
