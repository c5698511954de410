"""Tests for join inference, aliasing and field disambiguation."""

from __future__ import annotations

import pytest

from models import Article, Comment, Student, User
from querykit import AmbiguousFieldError, NoSuchRelationError, QueryBuildError, select

JOIN_ARTICLES = 'INNER JOIN "articles" ON "articles"."author_num" = "users"."id"'


class TestImplicitJoins:
    """Joins created by referencing related fields in where() and order_by()."""

    def test_to_many_condition_joins_and_groups(self):
        sql, args = select(User).where({"articles.title[contains]": "news"}).to_sql()
        assert sql == (
            f'SELECT "users".* FROM "users" {JOIN_ARTICLES} '
            "WHERE \"articles\".\"title\" LIKE ? ESCAPE '\\' "
            'GROUP BY "users"."id"'
        )
        assert args == ["%news%"]

    def test_full_query_with_order_limit_offset(self):
        query = (
            select(User)
            .where({"articles.title[contains]": "news"})
            .order_by("username", "-articles.title")
            .limit(10)
            .offset(20)
        )
        sql, _ = query.to_sql()
        assert sql == (
            f'SELECT "users".* FROM "users" {JOIN_ARTICLES} '
            "WHERE \"articles\".\"title\" LIKE ? ESCAPE '\\' "
            'GROUP BY "users"."id" '
            'ORDER BY "users"."username" ASC, "articles"."title" DESC LIMIT 10 OFFSET 20'
        )

    def test_to_one_condition_does_not_group(self):
        sql, args = select(Article).where({"author.username": "wbyoung"}).to_sql()
        assert sql == (
            'SELECT "articles".* FROM "articles" '
            'INNER JOIN "users" "author" ON "articles"."author_num" = "author"."id" '
            'WHERE "author"."username" = ?'
        )
        assert args == ["wbyoung"]

    def test_nested_path(self):
        sql, _ = select(User).where({"articles.comments.body[startswith]": "Great"}).to_sql("sqlite")
        assert sql == (
            f'SELECT "users".* FROM "users" {JOIN_ARTICLES} '
            'INNER JOIN "comments" ON "comments"."article_id" = "articles"."id" '
            'WHERE "comments"."body" GLOB ? GROUP BY "users"."id"'
        )

    def test_order_by_only_joins(self):
        sql, _ = select(Article).order_by("author.username").to_sql()
        assert sql == (
            'SELECT "articles".* FROM "articles" '
            'INNER JOIN "users" "author" ON "articles"."author_num" = "author"."id" '
            'ORDER BY "author"."username" ASC'
        )

    def test_path_joined_once(self):
        query = select(User).where({"articles.title": "a"}).where({"articles.body": "b"})
        sql, _ = query.to_sql()
        assert sql.count("INNER JOIN") == 1

    def test_relation_path_without_field_compares_primary_key(self):
        sql, args = select(User).where({"articles": 5}).to_sql()
        assert sql == f'SELECT "users".* FROM "users" {JOIN_ARTICLES} WHERE "articles"."id" = ? GROUP BY "users"."id"'
        assert args == [5]


class TestExplicitJoins:
    def test_join_does_not_group(self):
        sql, _ = select(User).join("articles").to_sql()
        assert sql == f'SELECT "users".* FROM "users" {JOIN_ARTICLES}'

    def test_explicit_join_is_reused_by_conditions(self):
        sql, _ = select(User).join("articles").where({"articles.title": "x"}).to_sql()
        assert sql == f'SELECT "users".* FROM "users" {JOIN_ARTICLES} WHERE "articles"."title" = ?'

    def test_left_join(self):
        sql, _ = select(User).join("articles", kind="left").to_sql()
        assert sql == 'SELECT "users".* FROM "users" LEFT JOIN "articles" ON "articles"."author_num" = "users"."id"'

    def test_join_kind_validated(self):
        with pytest.raises(QueryBuildError):
            select(User).join("articles", kind="outer")

    def test_unknown_relation_in_join(self):
        with pytest.raises(NoSuchRelationError) as excinfo:
            select(User).join("posts")
        assert excinfo.value.segment == "posts"
        assert "articles" in excinfo.value.known

    def test_table_join_infers_condition(self):
        sql, _ = select("cities").join("countries").to_sql()
        assert sql == (
            'SELECT "cities".* FROM "cities" INNER JOIN "countries" ON "cities"."country_id" = "countries"."id"'
        )

    def test_table_join_with_condition(self):
        sql, _ = select("cities").join("states", "cities.region = states.code").where({"states.name": "X"}).to_sql()
        assert sql == (
            'SELECT "cities".* FROM "cities" INNER JOIN "states" ON "cities"."region" = "states"."code" '
            'WHERE "states"."name" = ?'
        )


class TestFieldResolution:
    def test_bare_field_prefers_primary_model(self):
        sql, _ = select(User).join("articles").where({"id": 1}).to_sql()
        assert sql.endswith('WHERE "users"."id" = ?')

    def test_bare_field_found_on_single_join(self):
        sql, _ = select(User).join("articles").where({"title": "x"}).to_sql()
        assert sql.endswith('WHERE "articles"."title" = ?')

    def test_bare_field_on_several_joins_is_ambiguous(self):
        query = select(User).join("articles").join("comments").where({"body": "x"})
        with pytest.raises(AmbiguousFieldError) as excinfo:
            query.to_sql()
        assert excinfo.value.tables == ["articles", "comments"]

    def test_qualified_table_name(self):
        sql, _ = select(User).join("articles").where({"users.username": "a", "articles.title": "b"}).to_sql()
        assert sql.endswith('WHERE "users"."username" = ? AND "articles"."title" = ?')

    def test_fields_unqualified_without_joins(self):
        assert select(User).where({"username": "a"}).to_sql()[0] == 'SELECT * FROM "users" WHERE "username" = ?'

    def test_bare_belongs_to_uses_foreign_key(self):
        user = User.from_row({"id": 4, "username": "a"})
        sql, args = select(Article).where({"author": user}).to_sql()
        assert sql == 'SELECT * FROM "articles" WHERE "author_num" = ?'
        assert args == [4]

    def test_model_instances_unwrap_to_keys(self):
        users = [User.from_row({"id": 1}), User.from_row({"id": 2})]
        sql, args = select(Comment).where({"commenter_id[in]": users}).to_sql()
        assert sql == 'SELECT * FROM "comments" WHERE "commenter_id" IN (?, ?)'
        assert args == [1, 2]

    def test_unknown_segment_in_dotted_field(self):
        with pytest.raises(NoSuchRelationError) as excinfo:
            select(User).where({"articles.author.friends.name": "x"}).to_sql()
        assert excinfo.value.segment == "friends"
        assert excinfo.value.model_name == "User"

    def test_unknown_qualifier(self):
        with pytest.raises(NoSuchRelationError):
            select(User).where({"posts.title": "x"}).to_sql()

    def test_update_cannot_join(self):
        from querykit import ResolutionError, update

        with pytest.raises(ResolutionError):
            update(User, {"vip": True}).where({"articles.title": "x"}).to_sql()


class TestThroughJoins:
    def test_through_relation_joins_both_steps(self):
        sql, args = select(Student).where({"courses.title": "Math"}).to_sql()
        assert sql == (
            'SELECT "students".* FROM "students" '
            'INNER JOIN "enrollments" ON "enrollments"."student_id" = "students"."id" '
            'INNER JOIN "courses" ON "enrollments"."course_id" = "courses"."id" '
            'WHERE "courses"."title" = ? GROUP BY "students"."id"'
        )
        assert args == ["Math"]

    def test_through_reuses_explicit_intermediate_join(self):
        sql, _ = select(Student).join("enrollments").where({"courses.title": "Math"}).to_sql()
        assert sql.count('INNER JOIN "enrollments"') == 1
