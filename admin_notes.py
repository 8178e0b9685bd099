"""
admin_notes.py - Operator guidance attached to service subcategories.

Active notes for a subcategory are copied onto new orders as adminNotesDisplayed so
drivers see them without a manual step.
"""

from database import new_id, utc_now
from errors import NotFoundError, ValidationError

NOTE_FIELDS = {
    "subcategoryId": "subcategory_id",
    "title": "title",
    "content": "content",
    "priority": "priority",
    "isActive": "is_active",
}


def note_json(row):
    return {
        "id": row["id"],
        "subcategoryId": row["subcategory_id"],
        "title": row["title"],
        "content": row["content"],
        "priority": row["priority"],
        "isActive": bool(row["is_active"]),
        "createdAt": row["created_at"],
    }


def _check(data, partial=False):
    for f in ["subcategoryId", "title", "content"]:
        if f in data or not partial:
            if not isinstance(data.get(f), str) or not data[f].strip():
                raise ValidationError(f"Field '{f}' is required", f)
    if "priority" in data and (not isinstance(data["priority"], int) or isinstance(data["priority"], bool)):
        raise ValidationError("priority must be an integer", "priority")
    if "isActive" in data and not isinstance(data["isActive"], bool):
        raise ValidationError("isActive must be a boolean", "isActive")


def create_note(conn, data):
    _check(data)
    nid = new_id()
    conn.execute(
        "INSERT INTO admin_notes (id, subcategory_id, title, content, priority, is_active, created_at) VALUES (?,?,?,?,?,?,?)",
        [nid, data["subcategoryId"], data["title"], data["content"],
         data.get("priority", 0), 1 if data.get("isActive", True) else 0, utc_now()]
    )
    conn.commit()
    return get_note(conn, nid)


def get_note(conn, note_id):
    row = conn.execute("SELECT * FROM admin_notes WHERE id=?", [note_id]).fetchone()
    if not row:
        raise NotFoundError("Admin note not found")
    return note_json(row)


def list_notes(conn, subcategory_id=None, active_only=False):
    sql = "SELECT * FROM admin_notes"
    clauses, vals = [], []
    if subcategory_id:
        clauses.append("subcategory_id=?"); vals.append(subcategory_id)
    if active_only:
        clauses.append("is_active=1")
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY priority DESC, created_at, rowid"
    return [note_json(r) for r in conn.execute(sql, vals).fetchall()]


def update_note(conn, note_id, patch):
    get_note(conn, note_id)
    _check(patch, partial=True)
    fields, vals = [], []
    for key, column in NOTE_FIELDS.items():
        if key in patch:
            value = patch[key]
            if key == "isActive":
                value = 1 if value else 0
            fields.append(f"{column}=?"); vals.append(value)
    if not fields:
        raise ValidationError("No updatable fields")
    vals.append(note_id)
    conn.execute(f"UPDATE admin_notes SET {', '.join(fields)} WHERE id=?", vals)
    conn.commit()
    return get_note(conn, note_id)


def delete_note(conn, note_id):
    get_note(conn, note_id)
    conn.execute("DELETE FROM admin_notes WHERE id=?", [note_id])
    conn.commit()


def render_notes(conn, subcategory_id):
    """Active notes as "{title}: {content}" blocks, highest priority first; None if there are none."""
    if not subcategory_id:
        return None
    notes = list_notes(conn, subcategory_id, active_only=True)
    if not notes:
        return None
    return "\n\n".join(f"{n['title']}: {n['content']}" for n in notes)
