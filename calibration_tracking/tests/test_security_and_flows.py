import unittest
from datetime import date, timedelta

from fastapi.testclient import TestClient

import tracking_fixtures as fx

import CalTrack as app_module
from models.tracking_models import Employee


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine = fx.memory_engine()
        self.SessionLocal = fx.make_session_factory(self.engine)
        with self.SessionLocal() as db:
            fx.seed_reference_data(db)

        def override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_tracking_db] = override_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _login(self, employee_id):
        response = self.client.post(
            "/api/auth/login",
            json={"employeeID": employee_id, "pinCode": fx.PINS[employee_id]},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return {"X-Session-Token": response.json()["sessionToken"]}

    def _create_intake(self, headers, **overrides):
        body = {
            "requestType": "new",
            "description": "Dial indicator",
            "dueDate": (date.today() + timedelta(days=7)).isoformat(),
            "technicianID": fx.TECH_ID,
            "locationID": fx.LAB_ID,
            "employeeIDIn": fx.OWNER_ID,
        }
        body.update(overrides)
        return self.client.post("/api/intakes", json=body, headers=headers)

    def _ready_completion(self):
        with self.SessionLocal() as db:
            return fx.calibrated_item(db).OutgoingID

    def test_health(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_login_logout_revokes_session_token(self):
        headers = self._login(fx.OWNER_ID)

        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["user"]["role"], "employee")
        self.assertEqual(me_before.json()["user"]["departmentID"], fx.METROLOGY_ID)

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_login_persists_with_cookie_session(self):
        self._login(fx.TECH_ID)
        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["employeeID"], fx.TECH_ID)

    def test_login_rejects_bad_requests_and_wrong_pin(self):
        self.assertEqual(self.client.post("/api/auth/login", json={"employeeID": fx.OWNER_ID}).status_code, 400)
        self.assertEqual(
            self.client.post("/api/auth/login", json={"employeeID": fx.OWNER_ID, "pinCode": "4321", "role": "admin"}).status_code,
            400,
        )
        wrong = self.client.post("/api/auth/login", json={"employeeID": fx.OWNER_ID, "pinCode": "0000"})
        self.assertEqual(wrong.status_code, 401)
        unknown = self.client.post("/api/auth/login", json={"employeeID": 8888, "pinCode": "0000"})
        self.assertEqual(unknown.status_code, 401)

    def test_tracking_endpoints_require_session(self):
        anonymous = TestClient(app_module.app)
        for path in ["/api/intakes", "/api/completions", "/api/completions/ready-for-pickup", "/api/tracking/summary"]:
            self.assertEqual(anonymous.get(path).status_code, 401, path)
        forged = anonymous.get("/api/intakes", headers={"X-Session-Token": "abc.def"})
        self.assertEqual(forged.status_code, 401)

    def test_session_of_deactivated_employee_is_rejected(self):
        headers = self._login(fx.COLLEAGUE_ID)
        with self.SessionLocal() as db:
            db.get(Employee, fx.COLLEAGUE_ID).IsActive = False
            db.commit()
        self.assertEqual(self.client.get("/api/intakes", headers=headers).status_code, 401)

    def test_intake_to_pickup_flow(self):
        owner = self._login(fx.OWNER_ID)
        technician = self._login(fx.TECH_ID)
        outsider = self._login(fx.OUTSIDER_ID)

        created = self._create_intake(owner)
        self.assertEqual(created.status_code, 201, created.text)
        intake = created.json()
        self.assertEqual(intake["status"], "for_confirmation")

        denied = self.client.post(f"/api/intakes/{intake['incomingID']}/confirm", headers=owner)
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["detail"]["kind"], "authorization_error")

        confirmed = self.client.post(
            f"/api/intakes/{intake['incomingID']}/confirm",
            json={"receivedByID": fx.TECH_ID},
            headers=technician,
        )
        self.assertEqual(confirmed.status_code, 200, confirmed.text)
        self.assertEqual(confirmed.json()["status"], "pending_calibration")

        completion = self.client.post(
            "/api/completions",
            json={
                "incomingID": intake["incomingID"],
                "calDate": date.today().isoformat(),
                "calDueDate": (date.today() + timedelta(days=365)).isoformat(),
                "cycleTime": 4,
                "ctReqd": 3,
                "recallNumber": "RCL-424242",
            },
            headers=technician,
        )
        self.assertEqual(completion.status_code, 201, completion.text)
        outgoing = completion.json()
        self.assertEqual(outgoing["status"], "for_pickup")
        self.assertEqual(outgoing["overdue"], 1)
        self.assertEqual(outgoing["recallNumber"], "RCL-424242")
        self.assertIsNone(outgoing["employeeIDOut"])
        self.assertEqual(outgoing["releasedByID"], fx.TECH_ID)
        pickup_url = f"/api/completions/{outgoing['outgoingID']}/confirm-pickup"

        mismatch = self.client.post(
            pickup_url,
            json={"employeeID": fx.OUTSIDER_ID, "confirmationPin": fx.PINS[fx.OUTSIDER_ID]},
            headers=outsider,
        )
        self.assertEqual(mismatch.status_code, 403)
        self.assertIn("Assembly", mismatch.json()["detail"]["message"])

        wrong_pin = self.client.post(
            pickup_url,
            json={"employeeID": fx.OWNER_ID, "confirmationPin": "0000"},
            headers=owner,
        )
        self.assertEqual(wrong_pin.status_code, 401)
        self.assertEqual(wrong_pin.json()["detail"]["kind"], "authentication_error")

        missing_pin = self.client.post(pickup_url, json={"employeeID": fx.OWNER_ID}, headers=owner)
        self.assertEqual(missing_pin.status_code, 422)

        picked = self.client.post(
            pickup_url,
            json={"employee_id": fx.OWNER_ID, "confirmation_pin": fx.PINS[fx.OWNER_ID]},
            headers=owner,
        )
        self.assertEqual(picked.status_code, 200, picked.text)
        body = picked.json()
        self.assertTrue(body["success"])
        self.assertFalse(body["bypassed_pin"])
        self.assertEqual(body["data"]["status"], "completed")
        self.assertEqual(body["data"]["employeeIDOut"], fx.OWNER_ID)
        self.assertEqual(body["data"]["releasedByID"], fx.TECH_ID)

        again = self.client.post(pickup_url, json={"employeeID": fx.OWNER_ID}, headers=technician)
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["detail"]["kind"], "conflict")

        edit = self.client.put(f"/api/completions/{outgoing['outgoingID']}", json={"cycleTime": 2}, headers=technician)
        self.assertEqual(edit.status_code, 403)
        admin = self._login(fx.ADMIN_ID)
        edit = self.client.put(f"/api/completions/{outgoing['outgoingID']}", json={"cycleTime": 2}, headers=admin)
        self.assertEqual(edit.status_code, 200)
        self.assertEqual(edit.json()["overdue"], 0)

    def test_technician_pickup_bypasses_pin(self):
        outgoing_id = self._ready_completion()
        technician = self._login(fx.TECH_ID)
        response = self.client.post(
            f"/api/completions/{outgoing_id}/confirm-pickup",
            json={"employeeID": fx.OWNER_ID},
            headers=technician,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertTrue(response.json()["bypassed_pin"])
        self.assertIn("Tom Tech", response.json()["message"])

    def test_pickup_of_unknown_completion_is_404(self):
        owner = self._login(fx.OWNER_ID)
        response = self.client.post(
            "/api/completions/9999/confirm-pickup",
            json={"employeeID": fx.OWNER_ID, "confirmationPin": fx.PINS[fx.OWNER_ID]},
            headers=owner,
        )
        self.assertEqual(response.status_code, 404)

    def test_invalid_overdue_flag_is_rejected(self):
        outgoing_id = self._ready_completion()
        technician = self._login(fx.TECH_ID)
        response = self.client.put(f"/api/completions/{outgoing_id}", json={"overdue": "maybe"}, headers=technician)
        self.assertEqual(response.status_code, 422)
        response = self.client.put(f"/api/completions/{outgoing_id}", json={"overdue": "yes"}, headers=technician)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["overdue"], 1)

    def test_ready_for_pickup_is_scoped_to_department(self):
        outgoing_id = self._ready_completion()
        owner_view = self.client.get("/api/completions/ready-for-pickup", headers=self._login(fx.OWNER_ID)).json()
        self.assertEqual([item["outgoingID"] for item in owner_view["items"]], [outgoing_id])
        outsider_view = self.client.get("/api/completions/ready-for-pickup", headers=self._login(fx.OUTSIDER_ID)).json()
        self.assertEqual(outsider_view["total"], 0)
        nodept_view = self.client.get("/api/completions/ready-for-pickup", headers=self._login(fx.NO_DEPT_ID)).json()
        self.assertEqual(nodept_view["items"], [])

    def test_completion_listings_are_scoped_to_department(self):
        with self.SessionLocal() as db:
            metrology_id = fx.calibrated_item(db, cal_due_date=date.today() + timedelta(days=3)).OutgoingID
            assembly_id = fx.calibrated_item(
                db, employee_in=fx.OUTSIDER_ID, cal_due_date=date.today() + timedelta(days=3)
            ).OutgoingID

        outsider = self._login(fx.OUTSIDER_ID)
        listed = self.client.get("/api/completions", headers=outsider).json()
        self.assertEqual([item["outgoingID"] for item in listed["items"]], [assembly_id])
        asked_for_other = self.client.get(
            "/api/completions", params={"departmentID": fx.METROLOGY_ID}, headers=outsider
        ).json()
        self.assertNotIn(metrology_id, [item["outgoingID"] for item in asked_for_other["items"]])
        due_soon = self.client.get("/api/completions/due-soon", headers=outsider).json()
        self.assertEqual([item["outgoingID"] for item in due_soon["items"]], [assembly_id])

        nodept = self._login(fx.NO_DEPT_ID)
        self.assertEqual(self.client.get("/api/completions", headers=nodept).json()["total"], 0)
        self.assertEqual(self.client.get("/api/completions/due-soon", headers=nodept).json()["total"], 0)

        admin = self._login(fx.ADMIN_ID)
        self.assertEqual(self.client.get("/api/completions", headers=admin).json()["total"], 2)
        filtered = self.client.get("/api/completions", params={"departmentID": fx.METROLOGY_ID}, headers=admin).json()
        self.assertEqual([item["outgoingID"] for item in filtered["items"]], [metrology_id])

    def test_intake_listing_pagination_and_filters(self):
        admin = self._login(fx.ADMIN_ID)
        for _ in range(3):
            self.assertEqual(self._create_intake(admin).status_code, 201)
        routine = self._create_intake(admin, requestType="routine", recallNumber="RCL-100001")
        self.assertEqual(routine.status_code, 201)

        page = self.client.get("/api/intakes", params={"perPage": 2, "page": 2}, headers=admin).json()
        self.assertEqual(page["total"], 4)
        self.assertEqual(page["page"], 2)
        self.assertEqual(page["perPage"], 2)
        self.assertEqual(len(page["items"]), 2)

        pending = self.client.get("/api/intakes", params={"status": "pending_calibration"}, headers=admin).json()
        self.assertEqual(pending["total"], 1)
        found = self.client.get("/api/intakes", params={"search": "RCL-1000"}, headers=admin).json()
        self.assertEqual(found["items"][0]["recallNumber"], "RCL-100001")

        duplicate = self._create_intake(admin, requestType="routine", recallNumber="RCL-100001")
        self.assertEqual(duplicate.status_code, 400)
        invalid = self._create_intake(admin, locationID=77)
        self.assertEqual(invalid.status_code, 422)

    def test_archive_restore_and_forced_delete(self):
        outgoing_id = self._ready_completion()
        admin = self._login(fx.ADMIN_ID)
        owner = self._login(fx.OWNER_ID)
        incoming_id = self.client.get(f"/api/completions/{outgoing_id}", headers=admin).json()["incomingID"]

        self.assertEqual(self.client.post(f"/api/intakes/{incoming_id}/archive", headers=owner).status_code, 403)
        self.assertEqual(self.client.post(f"/api/intakes/{incoming_id}/archive", headers=admin).status_code, 200)
        self.assertEqual(self.client.get(f"/api/intakes/{incoming_id}", headers=admin).status_code, 404)
        self.assertEqual(self.client.get("/api/intakes/archived", headers=owner).status_code, 403)
        archived = self.client.get("/api/intakes/archived", headers=admin).json()
        self.assertEqual([item["incomingID"] for item in archived["items"]], [incoming_id])
        self.assertEqual(self.client.post(f"/api/intakes/{incoming_id}/restore", headers=admin).status_code, 200)

        self.assertEqual(self.client.delete(f"/api/intakes/{incoming_id}", headers=admin).status_code, 400)
        self.assertEqual(self.client.delete(f"/api/intakes/{incoming_id}", params={"force": "true"}, headers=admin).status_code, 200)
        survivor = self.client.get(f"/api/completions/{outgoing_id}", headers=admin).json()
        self.assertIsNone(survivor["incomingID"])
        self.assertIsNone(survivor["incoming"])

    def test_overdue_due_soon_and_summary_endpoints(self):
        admin = self._login(fx.ADMIN_ID)
        late = self._create_intake(admin, dueDate=(date.today() - timedelta(days=2)).isoformat()).json()
        with self.SessionLocal() as db:
            soon_id = fx.calibrated_item(db, cal_due_date=date.today() + timedelta(days=3)).OutgoingID

        overdue = self.client.get("/api/intakes/overdue", headers=admin).json()
        self.assertEqual([item["incomingID"] for item in overdue["items"]], [late["incomingID"]])
        due_soon = self.client.get("/api/completions/due-soon", params={"days": 5}, headers=admin).json()
        self.assertEqual([item["outgoingID"] for item in due_soon["items"]], [soon_id])
        narrow = self.client.get("/api/completions/due-soon", params={"days": 1}, headers=admin).json()
        self.assertEqual(narrow["total"], 0)
        recal = self.client.get("/api/completions/due-for-recalibration", headers=admin).json()
        self.assertEqual(recal["total"], 0)

        summary = self.client.get("/api/tracking/summary", headers=admin).json()
        self.assertEqual(summary["overdueIntakes"], 1)
        self.assertEqual(summary["completions"]["for_pickup"], 1)

        recall = self.client.post("/api/intakes/recall-number", headers=admin)
        self.assertEqual(recall.status_code, 200)
        self.assertRegex(recall.json()["recallNumber"], r"^RCL-\d{6}$")


if __name__ == "__main__":
    unittest.main()
