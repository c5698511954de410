"""Models shared by the test suite."""

from __future__ import annotations

from querykit import Base, Mapped, belongs_to, has_many, mapped_column


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(max_length=100)
    vip: Mapped[bool] = mapped_column(default=False)

    articles: Mapped[list[Article]] = has_many(inverse="author")
    comments: Mapped[list[Comment]] = has_many(inverse="commenter")


class Article(Base):
    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(max_length=200)
    body: Mapped[str | None] = mapped_column(nullable=True)
    author_key: Mapped[int | None] = mapped_column(column="author_num", nullable=True)

    author: Mapped[User] = belongs_to("User", foreign_key="author_key")
    comments: Mapped[list[Comment]] = has_many(inverse="article")


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(primary_key=True)
    body: Mapped[str] = mapped_column()
    article_id: Mapped[int | None] = mapped_column(nullable=True)
    commenter_id: Mapped[int | None] = mapped_column(nullable=True)

    article: Mapped[Article] = belongs_to()
    commenter: Mapped[User] = belongs_to("User")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)
    manager_id: Mapped[int | None] = mapped_column(nullable=True)

    manager: Mapped[Employee] = belongs_to("Employee", inverse="reports")
    reports: Mapped[list[Employee]] = has_many("Employee", inverse="manager")


class Student(Base):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(max_length=100)

    enrollments: Mapped[list[Enrollment]] = has_many(inverse="student")
    courses: Mapped[list[Course]] = has_many(through="enrollments")


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(max_length=100)

    enrollments: Mapped[list[Enrollment]] = has_many(inverse="course")
    students: Mapped[list[Student]] = has_many(through="enrollments")


class Enrollment(Base):
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(primary_key=True)
    student_id: Mapped[int] = mapped_column()
    course_id: Mapped[int] = mapped_column()

    student: Mapped[Student] = belongs_to()
    course: Mapped[Course] = belongs_to()


ALL_MODELS = (User, Article, Comment, Employee, Student, Course, Enrollment)
