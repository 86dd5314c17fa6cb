from app.payments.models import EnrolledThrough
from app.payments.roster import add_student, build_roster_entry, is_enrolled


async def test_add_student_appends_once(db, seed_course):
    await seed_course()

    first = await add_student(db, "C1", build_roster_entry("U1", EnrolledThrough.PAYMENT, payment_method="stripe"))
    second = await add_student(db, "C1", build_roster_entry("U1", EnrolledThrough.MANUAL_GRANT, granted_by="A1"))

    assert first is True
    assert second is False
    course = await db.courses.find_one({"course_id": "C1"})
    assert [s["user_id"] for s in course["students"]] == ["U1"]
    assert course["students"][0]["enrolled_through"] == "payment"
    assert course["total_students"] == 1
    assert is_enrolled(course, "U1")


async def test_add_student_keeps_counter_in_step(db, seed_course):
    await seed_course()

    for user_id in ("U1", "U2", "U1", "U3", "U2"):
        await add_student(db, "C1", build_roster_entry(user_id, EnrolledThrough.FREE))

    course = await db.courses.find_one({"course_id": "C1"})
    assert [s["user_id"] for s in course["students"]] == ["U1", "U2", "U3"]
    assert course["total_students"] == len(course["students"])


async def test_add_student_unknown_course(db):
    assert await add_student(db, "NOPE", build_roster_entry("U1", EnrolledThrough.FREE)) is False
