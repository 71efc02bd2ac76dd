import unittest
from datetime import date, timedelta

import tracking_fixtures as fx

from models.tracking_models import AuditLog, Equipment, TrackIncoming, TrackOutgoing
from schemas.intakes import CreateIntakeDto, UpdateIntakeDto
from services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from services.intake_service import (
    archive_intake,
    confirm_intake,
    create_intake,
    delete_intake,
    edit_intake,
    generate_recall_number,
    load_intake,
    restore_intake,
    serialize_intake,
)


class IntakeServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = fx.memory_engine()
        self.SessionLocal = fx.make_session_factory(self.engine)
        self.db = self.SessionLocal()
        fx.seed_reference_data(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _payload(self, **overrides):
        data = {
            "requestType": "new",
            "description": "Pressure gauge",
            "dueDate": date.today() + timedelta(days=10),
            "technicianID": fx.TECH_ID,
            "locationID": fx.LAB_ID,
            "employeeIDIn": fx.OWNER_ID,
        }
        data.update(overrides)
        return CreateIntakeDto(**data)

    def test_new_request_waits_for_confirmation(self):
        intake = create_intake(self.db, fx.EMPLOYEE, self._payload())
        self.assertEqual(intake.Status, "for_confirmation")
        self.assertIsNone(intake.RecallNumber)
        audit = self.db.query(AuditLog).filter_by(EntityType="Intake", EntityID=intake.IncomingID).one()
        self.assertEqual(audit.Action, "CreateIntake")
        self.assertEqual(audit.UserID, fx.OWNER_ID)

    def test_routine_request_requires_recall_number_and_links_equipment(self):
        with self.assertRaises(ValidationError):
            create_intake(self.db, fx.ADMIN, self._payload(requestType="routine"))

        intake = create_intake(self.db, fx.ADMIN, self._payload(requestType="routine", recallNumber="RCL-100001"))
        self.assertEqual(intake.Status, "pending_calibration")
        self.assertEqual(intake.EquipmentID, 1)
        self.assertEqual(intake.SerialNumber, "SN-TW-01")
        equipment = self.db.get(Equipment, 1)
        self.assertEqual(equipment.NextCalibrationDue, intake.DueDate)

    def test_duplicate_recall_number_is_a_conflict(self):
        create_intake(self.db, fx.ADMIN, self._payload(requestType="routine", recallNumber="RCL-100001"))
        with self.assertRaises(ConflictError):
            create_intake(self.db, fx.ADMIN, self._payload(requestType="routine", recallNumber="RCL-100001"))

    def test_routine_request_for_unknown_equipment_is_rejected(self):
        with self.assertRaises(NotFoundError) as ctx:
            create_intake(self.db, fx.ADMIN, self._payload(requestType="routine", recallNumber="RCL-999999"))
        self.assertIn("RCL-999999", ctx.exception.message)
        self.assertEqual(self.db.query(TrackIncoming).count(), 0)

    def test_new_request_may_carry_unregistered_recall_number(self):
        intake = create_intake(self.db, fx.ADMIN, self._payload(recallNumber="RCL-999999"))
        self.assertEqual(intake.Status, "for_confirmation")
        self.assertIsNone(intake.EquipmentID)

    def test_missing_references_are_validation_errors(self):
        with self.assertRaises(ValidationError):
            create_intake(self.db, fx.ADMIN, self._payload(description="  "))
        with self.assertRaises(ValidationError):
            create_intake(self.db, fx.ADMIN, self._payload(dueDate=None))
        with self.assertRaises(ValidationError):
            create_intake(self.db, fx.ADMIN, self._payload(locationID=99))
        with self.assertRaises(ValidationError):
            create_intake(self.db, fx.ADMIN, self._payload(employeeIDIn=9999))

    def test_technician_becomes_technician_and_receiver(self):
        intake = create_intake(self.db, fx.TECHNICIAN, self._payload(technicianID=fx.ADMIN_ID))
        self.assertEqual(intake.TechnicianID, fx.TECH_ID)
        self.assertEqual(intake.ReceivedByID, fx.TECH_ID)

    def test_confirm_moves_request_to_pending_calibration(self):
        intake = create_intake(self.db, fx.EMPLOYEE, self._payload())
        with self.assertRaises(AuthorizationError):
            confirm_intake(self.db, fx.EMPLOYEE, intake.IncomingID)

        confirmed = confirm_intake(self.db, fx.TECHNICIAN, intake.IncomingID, received_by_id=fx.TECH_ID)
        self.assertEqual(confirmed.Status, "pending_calibration")
        self.assertEqual(confirmed.ReceivedByID, fx.TECH_ID)

        with self.assertRaises(ConflictError):
            confirm_intake(self.db, fx.ADMIN, intake.IncomingID)

    def test_technician_cannot_confirm_someone_elses_request(self):
        intake = create_intake(self.db, fx.EMPLOYEE, self._payload(technicianID=fx.ADMIN_ID))
        with self.assertRaises(AuthorizationError):
            confirm_intake(self.db, fx.TECHNICIAN, intake.IncomingID)

    def test_edit_rejects_due_date_change(self):
        intake = fx.open_intake(self.db)
        with self.assertRaises(ValidationError):
            edit_intake(self.db, fx.ADMIN, intake.IncomingID, UpdateIntakeDto(dueDate=intake.DueDate + timedelta(days=1)))

        edited = edit_intake(self.db, fx.ADMIN, intake.IncomingID, UpdateIntakeDto(description="Caliper 150mm", notes="Jaw worn"))
        self.assertEqual(edited.Description, "Caliper 150mm")
        self.assertEqual(edited.Notes, "Jaw worn")

    def test_only_admin_edits_completed_intake(self):
        completion = fx.calibrated_item(self.db)
        with self.assertRaises(AuthorizationError):
            edit_intake(self.db, fx.TECHNICIAN, completion.IncomingID, UpdateIntakeDto(notes="late note"))
        edited = edit_intake(self.db, fx.ADMIN, completion.IncomingID, UpdateIntakeDto(notes="late note"))
        self.assertEqual(edited.Notes, "late note")

    def test_archive_hides_until_restored(self):
        intake = fx.open_intake(self.db)
        with self.assertRaises(AuthorizationError):
            archive_intake(self.db, fx.EMPLOYEE, intake.IncomingID)
        archive_intake(self.db, fx.TECHNICIAN, intake.IncomingID)

        with self.assertRaises(NotFoundError):
            load_intake(self.db, intake.IncomingID)
        with self.assertRaises(NotFoundError):
            edit_intake(self.db, fx.ADMIN, intake.IncomingID, UpdateIntakeDto(notes="x"))
        with self.assertRaises(AuthorizationError):
            restore_intake(self.db, fx.TECHNICIAN, intake.IncomingID)

        restored = restore_intake(self.db, fx.ADMIN, intake.IncomingID)
        self.assertIsNone(restored.ArchivedAt)
        with self.assertRaises(ConflictError):
            restore_intake(self.db, fx.ADMIN, intake.IncomingID)

    def test_delete_requires_force_when_completion_exists(self):
        completion = fx.calibrated_item(self.db)
        incoming_id = completion.IncomingID
        with self.assertRaises(AuthorizationError):
            delete_intake(self.db, fx.TECHNICIAN, incoming_id, force=True)
        with self.assertRaises(ConflictError):
            delete_intake(self.db, fx.ADMIN, incoming_id)

        delete_intake(self.db, fx.ADMIN, incoming_id, force=True)
        with self.assertRaises(NotFoundError):
            load_intake(self.db, incoming_id, include_archived=True)
        survivor = self.db.get(TrackOutgoing, completion.OutgoingID)
        self.assertIsNotNone(survivor)
        self.assertIsNone(survivor.IncomingID)

    def test_delete_without_completion(self):
        intake = fx.open_intake(self.db)
        delete_intake(self.db, fx.ADMIN, intake.IncomingID)
        with self.assertRaises(NotFoundError):
            load_intake(self.db, intake.IncomingID, include_archived=True)

    def test_generate_recall_number_format(self):
        recall = generate_recall_number(self.db)
        self.assertRegex(recall, r"^RCL-\d{6}$")

    def test_serialize_flags_overdue(self):
        intake = fx.open_intake(self.db, due_date=date.today() - timedelta(days=1))
        payload = serialize_intake(intake)
        self.assertTrue(payload["isOverdue"])
        self.assertEqual(payload["employeeIn"]["departmentName"], "Metrology")
        self.assertIsNone(payload["completionID"])


if __name__ == "__main__":
    unittest.main()
