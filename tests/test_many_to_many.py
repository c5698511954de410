"""Tests for relations through a join model."""

from __future__ import annotations

from conftest import insert_ids
from models import Course, Student
from querykit import selectinload


def student(student_id: int = 1) -> Student:
    return Student.from_row({"id": student_id, "name": "Sam"})


def course(course_id: int) -> Course:
    return Course.from_row({"id": course_id, "title": f"Course {course_id}"})


class TestThroughFlush:
    async def test_add_inserts_join_rows_in_one_statement(self, db, adapter):
        owner = student(1)
        owner.related("courses").add(course(3), course(4))

        await db.save(owner)

        assert adapter.executed == [
            ('INSERT INTO "enrollments" ("student_id", "course_id") VALUES (?, ?), (?, ?)', [1, 3, 1, 4])
        ]

    async def test_remove_deletes_join_rows(self, db, adapter):
        owner = student(1)
        owner.related("courses").remove(course(3))

        await db.save(owner)

        assert adapter.executed == [
            ('DELETE FROM "enrollments" WHERE "student_id" = ? AND "course_id" = ?', [1, 3])
        ]

    async def test_clear_remove_add_order(self, db, adapter):
        owner = student(1)
        manager = owner.related("courses")
        manager.clear()
        manager.add(course(5))

        await db.save(owner)

        assert adapter.executed == [
            ('DELETE FROM "enrollments" WHERE "student_id" = ?', [1]),
            ('INSERT INTO "enrollments" ("student_id", "course_id") VALUES (?, ?)', [1, 5]),
        ]

    async def test_unsaved_targets_are_inserted_first(self, db, adapter):
        adapter.respond(r'^INSERT INTO "courses"', insert_ids(9))
        owner = student(2)
        created = owner.related("courses").create(title="Physics")

        await db.save(owner)

        assert adapter.sql == [
            'INSERT INTO "courses" ("title") VALUES (?) RETURNING "id"',
            'INSERT INTO "enrollments" ("student_id", "course_id") VALUES (?, ?)',
        ]
        assert adapter.args[1] == [2, 9]
        assert created.id == 9


class TestThroughQueries:
    async def test_related_query(self, db):
        owner = student(1)
        object.__setattr__(owner, "_database", db)

        sql, args = owner.related("courses").query().to_sql()

        assert sql == (
            'SELECT "courses".* FROM "courses" '
            'INNER JOIN "enrollments" ON "enrollments"."course_id" = "courses"."id" '
            'WHERE "enrollments"."student_id" = ? GROUP BY "courses"."id"'
        )
        assert args == [1]

    async def test_selectinload_through(self, db, adapter):
        adapter.respond(r'^SELECT \* FROM "students"', [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}])
        adapter.respond(
            r'^SELECT \* FROM "enrollments"',
            [
                {"id": 10, "student_id": 1, "course_id": 7},
                {"id": 11, "student_id": 1, "course_id": 8},
                {"id": 12, "student_id": 2, "course_id": 7},
            ],
        )
        adapter.respond(r'^SELECT \* FROM "courses"', [{"id": 7, "title": "Math"}, {"id": 8, "title": "Art"}])

        students = await db.query(Student).options(selectinload("courses"))

        assert adapter.executed[1:] == [
            ('SELECT * FROM "enrollments" WHERE "student_id" IN (?, ?)', [1, 2]),
            ('SELECT * FROM "courses" WHERE "id" IN (?, ?)', [7, 8]),
        ]
        first, second = students
        assert [c.title for c in first.courses] == ["Math", "Art"]
        assert [c.title for c in second.courses] == ["Math"]
        assert first.courses[0] is second.courses[0]
