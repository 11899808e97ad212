from datetime import datetime, timezone
from typing import Optional, Any, Dict
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from . import models


class ComplianceLogger:
	"""Writes audit events into the AuditLog table inside the caller's session.

	The row is flushed, not committed, so it lands or rolls back together with
	the mutation it describes.
	"""

	def __init__(self):
		self.logger = logging.getLogger('ot_allocation.audit')

	def log_event(
		self,
		db: Session,
		action: str,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
		user_id: Optional[int] = None,
		username: Optional[str] = None,
		old_values: Optional[Dict[str, Any]] = None,
		new_values: Optional[Dict[str, Any]] = None,
	) -> Optional[models.AuditLog]:
		"""Stage an audit row; returns None when it could not be staged."""
		action_upper = (action.value if hasattr(action, 'value') else action or '').upper()
		try:
			action_enum = models.AuditAction(action_upper)
		except ValueError:
			if 'CREATE' in action_upper or 'DUPLICATE' in action_upper:
				action_enum = models.AuditAction.CREATE
			elif 'DELETE' in action_upper:
				action_enum = models.AuditAction.DELETE
			elif 'UPDATE' in action_upper or 'SLOT' in action_upper or 'STATUS' in action_upper:
				action_enum = models.AuditAction.UPDATE
			else:
				action_enum = models.AuditAction.READ

		try:
			db_log = models.AuditLog(
				user_id=user_id,
				username=username if username else (str(user_id) if user_id else 'System'),
				action=action_enum,
				category=category or 'GENERAL',
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=resource_id,
				details=details,
				old_values=_jsonable(old_values),
				new_values=_jsonable(new_values),
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.flush()
			return db_log
		except SQLAlchemyError as e:
			self.logger.error(f"Failed to stage audit log ({category}/{action_upper}): {e}")
			return None


def _jsonable(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
	if values is None:
		return None
	out = {}
	for key, value in values.items():
		if hasattr(value, 'isoformat'):
			value = value.isoformat()
		elif hasattr(value, 'value'):
			value = value.value
		out[key] = value
	return out


# Singleton instance for global import
compliance_logger = ComplianceLogger()
