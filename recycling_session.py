# recycling_session.py
# One user's occupancy of one bin, from the lease check to the points award.
#
#   checking -> occupied (retry -> checking, back -> closed)
#   checking -> waiting <-> confirmation <-> correction
#   waiting  -> summary (finish, or inactivity timeout)
#   summary  -> awarded | waiting (continue)
#   any      -> closed (leave / unmount / page hide), checking -> error
#
# All methods run on the scheduler's dispatch thread.

import logging
from collections import deque
from datetime import timedelta

from bin_lease import BinLeaseManager, BinNotFoundError
from datastore import DataStoreError
from event_listeners import CorrectionListener, WasteEventListener
from models import (ALERTS, GUEST_ROLE, USERS, WASTE_EVENTS, CorrectionAlert, EventOrigin,
                    LeaseResult, SessionPhase, WasteEvent)
from session_accumulator import SessionAccumulator
from util import isoformat, new_session_id, normalize_waste_type

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_SECONDS = 3 * 60
HEARTBEAT_SECONDS = 10


class SessionStateError(Exception):
    """The requested action is not available in the session's current phase."""


class SessionNotFoundError(LookupError):
    pass


class UserNotFoundError(LookupError):
    def __init__(self, user_id):
        super().__init__(f"User not found in database: {user_id}")
        self.user_id = user_id


class RecyclingSession:
    def __init__(self, bin_id, user_id, store, scheduler, leases=None,
                 timeout_seconds=SESSION_TIMEOUT_SECONDS, heartbeat_seconds=HEARTBEAT_SECONDS):
        self.bin_id = bin_id
        self.user_id = user_id
        self.store = store
        self.scheduler = scheduler
        self.leases = leases or BinLeaseManager(store, scheduler.now)
        self.timeout_seconds = timeout_seconds
        self.heartbeat_seconds = heartbeat_seconds

        self.phase = SessionPhase.CHECKING
        self.message = None
        self.accumulator = None
        self.deadline = None
        self.lease_held = False
        self.pending_event = None  # classification awaiting confirmation (demo path)
        self.pending_corrections = deque()

        self._timeout_handle = None
        self._heartbeat_handle = None
        self.waste_listener = WasteEventListener(store, scheduler, bin_id, self._on_device_event)
        self.correction_listener = CorrectionListener(store, scheduler, bin_id, self._on_correction_prompt,
                                                      self._on_correction_resolved)

    def __repr__(self):
        return f"<RecyclingSession bin={self.bin_id} user={self.user_id} phase={self.phase.value}>"

    # --- Lease check -------------------------------------------------------

    def check(self):
        self._require('check the bin', SessionPhase.CHECKING)
        try:
            result = self.leases.acquire(self.bin_id, self.user_id)
        except BinNotFoundError as e:
            return self._fail(f"Error checking bin: {e}")
        except DataStoreError as e:
            logger.error("Error checking bin occupation for %s: %s", self.bin_id, e)
            return self._fail(f"Error checking bin: {e}")

        if result is LeaseResult.OCCUPIED:
            self.message = f"Bin {self.bin_id} is occupied by another user."
            self._set_phase(SessionPhase.OCCUPIED)
            return self.phase

        self.lease_held = True
        self.message = None
        now = self.scheduler.now()
        self.accumulator = SessionAccumulator(new_session_id(now), now)
        logger.info("New session %s started on bin %s", self.accumulator.session_id, self.bin_id)
        self._resume()
        return self.phase

    def retry(self):
        self._require('try again', SessionPhase.OCCUPIED)
        self._set_phase(SessionPhase.CHECKING)
        return self.check()

    def go_back(self):
        self._require('go back', SessionPhase.OCCUPIED)
        self.teardown('went back from occupied bin')
        return self.phase

    # --- Waiting ------------------------------------------------------------

    def finish(self):
        """Finish Current Process: jump straight to the summary."""
        self._require('finish', *self._active_phases())
        self._end_session()
        return self.phase

    def _on_device_event(self, event):
        if not self.phase.is_active:
            logger.warning("Dropping device event for bin %s in phase %s", self.bin_id, self.phase.value)
            return
        self._accept_item(event.waste_type)

    def _on_correction_prompt(self, report):
        if not self.phase.is_active:
            return
        self.pending_corrections.append(report)
        # The user is busy with the prompt; that counts as activity
        self._arm_timeout()

    def _on_correction_resolved(self, report_id):
        if self._drop_correction(report_id):
            logger.info("Wrong classification %s resolved elsewhere, prompt dropped", report_id)

    def _drop_correction(self, report_id):
        for report in self.pending_corrections:
            if report.id == report_id:
                self.pending_corrections.remove(report)
                return True
        return False

    def _accept_item(self, waste_type):
        now = self.scheduler.now()
        bucket = self.accumulator.add_item(waste_type, now)
        self._arm_timeout()
        logger.info("Added %s item to session %s, points now %d",
                    bucket, self.accumulator.session_id, self.accumulator.points)

        echo = WasteEvent.echo(self.bin_id, bucket, self.user_id, self.accumulator.session_id, now)
        document = echo.to_document()
        document['session_timestamp'] = self.accumulator.started_at
        try:
            self.store.insert_one(WASTE_EVENTS, document)
        except DataStoreError as e:
            logger.error("Error creating waste event record for session %s: %s",
                         self.accumulator.session_id, e)
            return False
        return True

    def answer_wrong_classification(self, waste_type):
        if self.phase.is_terminal or not self.pending_corrections:
            raise SessionStateError("No wrong classification is waiting for an answer")
        report = self.pending_corrections[0]
        try:
            self.correction_listener.answer(report, waste_type)
        except DataStoreError as e:
            logger.error("Error updating wrong classification %s: %s", report.id, e)
            self.message = f"Error submitting answer: {e}"
            return self.phase
        self._drop_correction(report.id)
        self.message = None
        return self.phase

    # --- Confirmation / correction (manual entry and demo path) -----------

    def receive_identification(self, waste_type, confidence=0.95):
        self._require('show an identification', SessionPhase.WAITING)
        self.pending_event = WasteEvent(
            bin_id=self.bin_id,
            waste_type=normalize_waste_type(waste_type),
            origin=EventOrigin.DEVICE,
            timestamp=self.scheduler.now(),
            confidence=confidence,
        )
        self.message = None
        self._set_phase(SessionPhase.CONFIRMATION)
        return self.phase

    def confirm(self):
        self._require('confirm', SessionPhase.CONFIRMATION)
        event, self.pending_event = self.pending_event, None
        self._set_phase(SessionPhase.WAITING)
        if not self._accept_item(event.waste_type):
            self.message = "Error processing identification: Failed to record waste event."
        return self.phase

    def dispute(self):
        self._require('dispute', SessionPhase.CONFIRMATION)
        self._set_phase(SessionPhase.CORRECTION)
        return self.phase

    def submit_correction(self, corrected_type):
        self._require('submit a correction', SessionPhase.CORRECTION)
        alert = CorrectionAlert(
            bin_id=self.bin_id,
            original_waste_type=self.pending_event.waste_type,
            corrected_waste_type=normalize_waste_type(corrected_type),
            user_id=self.user_id,
            timestamp=self.scheduler.now(),
        )
        try:
            self.store.insert_one(ALERTS, alert.to_document())
        except DataStoreError as e:
            logger.error("Error submitting correction for bin %s: %s", self.bin_id, e)
            self.message = f"Error submitting correction: {e}"
            return self.phase
        self.pending_event = None
        self.message = "Correction submitted successfully! Thank you for your feedback."
        self._set_phase(SessionPhase.WAITING)
        return self.phase

    # --- Summary ------------------------------------------------------------

    def award(self):
        """Award & Return: persist the session totals, then release everything."""
        self._require('award points', SessionPhase.SUMMARY)
        points = self.accumulator.points
        try:
            credited = self._award_points()
        except (UserNotFoundError, DataStoreError) as e:
            logger.error("Error awarding points for session %s: %s", self.accumulator.session_id, e)
            self.message = f"Error awarding points: {e}"
            return self.phase

        if credited:
            self.message = f"Successfully awarded {points} points for your recycling session!"
        else:
            self.message = (f"Guest session: {points} points were not saved and would be lost. "
                            "Sign up to keep your points.")
        self.teardown('points awarded', final_phase=SessionPhase.AWARDED)
        return self.phase

    def _award_points(self):
        user = self.store.find_by_key(USERS, self.user_id, 'auth_uid')
        if user is None:
            raise UserNotFoundError(self.user_id)
        if user.get('role') == GUEST_ROLE:
            logger.info("Guest user %s - no points awarded", self.user_id)
            return False

        increments = {'total_points': self.accumulator.points}
        for waste_type, count in self.accumulator.counts.items():
            if count:
                increments[f'recycle_stats.{waste_type}'] = count
        self.store.update_one(USERS, {'_id': user['_id']}, {'$inc': increments})
        logger.info("Awarded %d points to user %s", self.accumulator.points, self.user_id)
        return True

    def continue_session(self):
        """Continue Session: same lease, same totals, fresh inactivity window."""
        self._require('continue', SessionPhase.SUMMARY)
        # No heartbeat runs on the summary screen, so the lease may have gone stale and moved on
        try:
            result = self.leases.acquire(self.bin_id, self.user_id)
        except (BinNotFoundError, DataStoreError) as e:
            logger.error("Error re-checking bin %s on continue: %s", self.bin_id, e)
            self.message = f"Error checking bin: {e}"
            return self.phase
        if result is LeaseResult.OCCUPIED:
            self.lease_held = False
            self.message = (f"Bin {self.bin_id} is now in use by another user. "
                            "You can still collect the points from this session.")
            logger.info("Session %s lost bin %s while on the summary",
                        self.accumulator.session_id, self.bin_id)
            return self.phase

        self.lease_held = True
        self.message = None
        self._resume()
        logger.info("Session %s continued, totals preserved", self.accumulator.session_id)
        return self.phase

    # --- Lifecycle ----------------------------------------------------------

    def teardown(self, reason='closed', final_phase=SessionPhase.CLOSED):
        """Shared exit path: stop listeners and timers, release the lease once."""
        if self.phase.is_terminal:
            return False
        logger.info("Tearing down session on bin %s (%s)", self.bin_id, reason)
        self._stop_activity()
        if self.lease_held:
            self.lease_held = False
            self.leases.release(self.bin_id)
        self.pending_event = None
        self.pending_corrections.clear()
        self._set_phase(final_phase)
        return True

    def _resume(self):
        self._set_phase(SessionPhase.WAITING)
        self._arm_timeout()
        if self._heartbeat_handle is None:
            self._heartbeat_handle = self.scheduler.call_every(self.heartbeat_seconds, self._heartbeat)
        self.waste_listener.start()
        self.correction_listener.start()

    def _end_session(self):
        self._stop_activity()
        self.pending_event = None
        self._set_phase(SessionPhase.SUMMARY)

    def _stop_activity(self):
        self._cancel_timeout()
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None
        self.waste_listener.stop()
        self.correction_listener.stop()

    def _fail(self, message):
        self.message = message
        self.teardown(message, final_phase=SessionPhase.ERROR)
        return self.phase

    def _arm_timeout(self):
        self._cancel_timeout()
        self.deadline = self.scheduler.now() + timedelta(seconds=self.timeout_seconds)
        self._timeout_handle = self.scheduler.call_later(self.timeout_seconds, self._on_timeout)

    def _cancel_timeout(self):
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        self.deadline = None

    def _on_timeout(self):
        self._timeout_handle = None
        if not self.phase.is_active:
            return
        logger.info("Session timeout on bin %s - ending session", self.bin_id)
        self._end_session()

    def _heartbeat(self):
        if self.lease_held and self.phase.is_active:
            self.leases.heartbeat(self.bin_id)

    # --- Helpers ------------------------------------------------------------

    @staticmethod
    def _active_phases():
        return [phase for phase in SessionPhase if phase.is_active]

    def _require(self, action, *phases):
        if self.phase not in phases:
            raise SessionStateError(f"Cannot {action} while the session is {self.phase.value}")

    def _set_phase(self, phase):
        if phase is not self.phase:
            logger.debug("Session on bin %s: %s -> %s", self.bin_id, self.phase.value, phase.value)
        self.phase = phase

    @property
    def degraded(self):
        return self.waste_listener.failed or self.correction_listener.failed

    def view(self):
        now = self.scheduler.now()
        view = {
            'bin_id': self.bin_id,
            'session_id': None,
            'phase': self.phase.value,
            'message': self.message,
            'degraded': self.degraded,
            'counts': None,
            'points': 0,
            'started_at': None,
            'last_item_at': None,
            'duration_seconds': 0,
            'deadline': isoformat(self.deadline),
            'seconds_remaining': None,
            'pending_event': None,
            'pending_correction': None,
        }
        if self.accumulator is not None:
            view.update(self.accumulator.snapshot(now).to_dict())
        if self.deadline is not None:
            view['seconds_remaining'] = max(0, int((self.deadline - now).total_seconds()))
        if self.pending_event is not None:
            view['pending_event'] = {
                'waste_type': self.pending_event.waste_type,
                'confidence': self.pending_event.confidence,
            }
        if self.pending_corrections:
            view['pending_correction'] = self.pending_corrections[0].to_view()
        return view


class SessionRegistry:
    """Open sessions of this process, keyed by (user_id, bin_id). Dispatch thread only."""

    def __init__(self, store, scheduler, leases=None,
                 timeout_seconds=SESSION_TIMEOUT_SECONDS, heartbeat_seconds=HEARTBEAT_SECONDS):
        self.store = store
        self.scheduler = scheduler
        self.leases = leases or BinLeaseManager(store, scheduler.now)
        self.timeout_seconds = timeout_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._sessions = {}

    def __len__(self):
        return len(self._sessions)

    def open(self, user_id, bin_id):
        key = (user_id, bin_id)
        previous = self._sessions.pop(key, None)
        if previous is not None:
            previous.teardown('session reopened')
        session = RecyclingSession(bin_id, user_id, self.store, self.scheduler, self.leases,
                                   timeout_seconds=self.timeout_seconds,
                                   heartbeat_seconds=self.heartbeat_seconds)
        self._sessions[key] = session
        session.check()
        return self._settle(key, session)

    def get(self, user_id, bin_id):
        session = self._sessions.get((user_id, bin_id))
        if session is None:
            raise SessionNotFoundError(f"No recycling session for bin {bin_id}")
        return session

    def view(self, user_id, bin_id):
        return self.get(user_id, bin_id).view()

    def perform(self, user_id, bin_id, action, *args):
        session = self.get(user_id, bin_id)
        getattr(session, action)(*args)
        return self._settle((user_id, bin_id), session)

    def leave(self, user_id, bin_id):
        """Page hide / unload / unmount. Unknown sessions are already gone."""
        session = self._sessions.get((user_id, bin_id))
        if session is None:
            return None
        session.teardown('client left')
        return self._settle((user_id, bin_id), session)

    def close_all(self):
        for session in list(self._sessions.values()):
            session.teardown('shutdown')
        self._sessions.clear()

    def _settle(self, key, session):
        view = session.view()
        if session.phase.is_terminal:
            self._sessions.pop(key, None)
        return view
