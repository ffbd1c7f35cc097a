"""Durable CRUD for scenario bindings, the processed-call log and known chats.

Each function performs one point operation and commits it.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callrelay.models import CallLog, KnownChat, ScenarioBinding


def _insert_ignoring_conflicts(db: Session, model, values: dict[str, Any], index_elements: list[str]) -> bool:
    """Insert a row unless one with the same key exists. Returns True if a row was written."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        return _insert_if_absent(db, model, values, index_elements)
    inserted = db.execute(stmt).rowcount > 0
    db.commit()
    return inserted


def _insert_if_absent(db: Session, model, values: dict[str, Any], index_elements: list[str]) -> bool:
    # Dialects without ON CONFLICT: the unique constraint settles concurrent inserts.
    criteria = [getattr(model, column) == values[column] for column in index_elements]
    if db.query(model).filter(*criteria).first() is not None:
        return False
    try:
        db.execute(insert(model).values(**values))
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


# === BINDINGS ===


def upsert_binding(
    db: Session,
    scenario_id: str,
    chat_id: str,
    scenario_name: Optional[str] = None,
    chat_title: Optional[str] = None,
) -> ScenarioBinding:
    """Bind a scenario to a chat, replacing any previous binding for the scenario."""
    binding = db.query(ScenarioBinding).filter(ScenarioBinding.scenario_id == str(scenario_id)).first()
    if binding is None:
        binding = ScenarioBinding(scenario_id=str(scenario_id))
        db.add(binding)
    binding.chat_id = str(chat_id)
    binding.scenario_name = scenario_name
    binding.chat_title = chat_title
    db.commit()
    db.refresh(binding)
    return binding


def remove_binding(db: Session, scenario_id: str) -> bool:
    deleted = db.query(ScenarioBinding).filter(ScenarioBinding.scenario_id == str(scenario_id)).delete()
    db.commit()
    return deleted > 0


def list_bindings(db: Session) -> list[ScenarioBinding]:
    return db.query(ScenarioBinding).order_by(ScenarioBinding.scenario_name, ScenarioBinding.scenario_id).all()


def get_chat_for_scenario(db: Session, scenario_id: str) -> Optional[str]:
    binding = db.query(ScenarioBinding).filter(ScenarioBinding.scenario_id == str(scenario_id)).first()
    return binding.chat_id if binding else None


# === PROCESSED CALLS ===


def record_call(
    db: Session,
    *,
    call_id: str,
    scenario_id: Optional[str],
    result_name: Optional[str],
    manager_name: Optional[str],
    phone: Optional[str],
    comment: Optional[str],
    started_at: Optional[datetime],
    chat_id: Optional[str],
    delivery: str,
) -> bool:
    """Insert the call into the processed log. Returns False if it was already there."""
    return _insert_ignoring_conflicts(
        db,
        CallLog,
        {
            "call_id": str(call_id),
            "scenario_id": scenario_id,
            "result_name": result_name,
            "manager_name": manager_name,
            "phone": phone,
            "comment": comment,
            "started_at": started_at,
            "processed_at": datetime.now(timezone.utc),
            "telegram_chat_id_sent": chat_id,
            "delivery": delivery,
        },
        ["call_id"],
    )


def is_call_recorded(db: Session, call_id: str) -> bool:
    return db.query(CallLog.id).filter(CallLog.call_id == str(call_id)).first() is not None


def get_call_log(db: Session, call_id: str) -> Optional[CallLog]:
    return db.query(CallLog).filter(CallLog.call_id == str(call_id)).first()


# === KNOWN CHATS ===


def upsert_known_chat(db: Session, chat_id: int, title: Optional[str], chat_type: Optional[str]) -> KnownChat:
    chat = db.get(KnownChat, chat_id)
    if chat is None:
        chat = KnownChat(id=chat_id)
        db.add(chat)
    chat.title = title
    chat.type = chat_type
    chat.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(chat)
    return chat


def remove_known_chat(db: Session, chat_id: int) -> bool:
    deleted = db.query(KnownChat).filter(KnownChat.id == chat_id).delete()
    db.commit()
    return deleted > 0


def list_known_chats(db: Session, include_private: bool = False) -> list[KnownChat]:
    query = db.query(KnownChat)
    if not include_private:
        query = query.filter(KnownChat.type != "private")
    return query.order_by(KnownChat.title).all()
