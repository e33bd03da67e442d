"""Tests for AUTOPROC procedure generation."""

import pytest

from sqlschema.installer.autoproc import AutoProcGenerator
from sqlschema.installer.schema_object import SchemaObject
from sqlschema.installer.sql_parser import AUTOPROC_VERBS
from sqlschema.installer.sql_parser import AutoProcDirective
from sqlschema.installer.sql_parser import SchemaObjectType
from sqlschema.installer.table_columns import parse_table_definition

BEER_TABLE = "CREATE TABLE [Beer] ([ID] [int] IDENTITY NOT NULL, [Description] [varchar](128) NULL)"


def directive(*verbs, table="dbo.beer"):
    return AutoProcDirective(verbs=verbs, table=table)


@pytest.fixture
def generator():
    """Create a generator for the Beer table keyed on ID."""
    return AutoProcGenerator(parse_table_definition(BEER_TABLE), ["ID"])


class TestProcedureText:
    """Test the generated statements verb by verb."""

    def test_procedure_name(self, generator):
        assert generator.procedure_name("select") == "SelectBeer"
        assert generator.procedure_name("upsert") == "UpsertBeer"

    def test_select(self, generator):
        assert generator.generate(directive("select")) == [
            "CREATE PROCEDURE [dbo].[SelectBeer]\n(\n\t@ID [int]\n)\nAS\nSELECT * FROM [dbo].[Beer] WHERE [ID] = @ID"
        ]

    def test_insert_skips_identity(self, generator):
        assert generator.generate(directive("insert")) == [
            "CREATE PROCEDURE [dbo].[InsertBeer]\n(\n\t@Description [varchar](128)\n)\nAS\n"
            "INSERT INTO [dbo].[Beer] ([Description])\nOUTPUT INSERTED.*\nVALUES (@Description)"
        ]

    def test_update(self, generator):
        assert generator.generate(directive("update")) == [
            "CREATE PROCEDURE [dbo].[UpdateBeer]\n(\n\t@ID [int],\n\t@Description [varchar](128)\n)\nAS\n"
            "UPDATE [dbo].[Beer] SET [Description] = @Description\nWHERE [ID] = @ID"
        ]

    def test_upsert(self, generator):
        (sql,) = generator.generate(directive("upsert"))

        assert sql.startswith("CREATE PROCEDURE [dbo].[UpsertBeer]\n(\n\t@ID [int],\n\t@Description [varchar](128)\n)")
        assert "IF EXISTS (SELECT 1 FROM [dbo].[Beer] WHERE [ID] = @ID)" in sql
        assert "INSERT INTO [dbo].[Beer] ([Description]) VALUES (@Description)" in sql

    def test_delete(self, generator):
        assert generator.generate(directive("delete")) == [
            "CREATE PROCEDURE [dbo].[DeleteBeer]\n(\n\t@ID [int]\n)\nAS\nDELETE FROM [dbo].[Beer] WHERE [ID] = @ID"
        ]

    def test_find(self, generator):
        assert generator.generate(directive("find")) == [
            "CREATE PROCEDURE [dbo].[FindBeer]\n(\n\t@ID [int] = NULL,\n\t@Description [varchar](128) = NULL\n)\nAS\n"
            "SELECT * FROM [dbo].[Beer]\nWHERE (@ID IS NULL OR [ID] = @ID)\n\tAND (@Description IS NULL OR [Description] = @Description)"
        ]

    def test_all_verbs_parse_as_procedures(self, generator):
        statements = generator.generate(directive(*AUTOPROC_VERBS))

        objects = [SchemaObject(sql, generated=True) for sql in statements]
        assert [o.name for o in objects] == [
            "dbo.selectbeer",
            "dbo.insertbeer",
            "dbo.updatebeer",
            "dbo.upsertbeer",
            "dbo.deletebeer",
            "dbo.findbeer",
        ]
        assert all(o.object_type == SchemaObjectType.PROCEDURE for o in objects)
        assert all("dbo.beer" in o.dependencies for o in objects)


class TestKeys:
    """Test key column selection and keyless tables."""

    def test_identity_used_when_no_key_given(self):
        generator = AutoProcGenerator(parse_table_definition(BEER_TABLE))

        assert [c.name for c in generator.keys] == ["ID"]

    def test_keyless_table_skips_keyed_verbs(self):
        generator = AutoProcGenerator(parse_table_definition("CREATE TABLE Log ([Message] [varchar](100) NULL)"))

        statements = generator.generate(directive(*AUTOPROC_VERBS, table="dbo.log"))

        assert len(statements) == 2
        assert statements[0].startswith("CREATE PROCEDURE [dbo].[InsertLog]")
        assert statements[1].startswith("CREATE PROCEDURE [dbo].[FindLog]")

    def test_schema_qualified_table(self):
        table = parse_table_definition("CREATE TABLE [Sales].[Order] ([OrderID] [int] NOT NULL, [Total] [money] NULL)")
        generator = AutoProcGenerator(table, ["OrderID"])

        (sql,) = generator.generate(directive("delete", table="sales.order"))

        assert sql == (
            "CREATE PROCEDURE [Sales].[DeleteOrder]\n(\n\t@OrderID [int]\n)\nAS\n"
            "DELETE FROM [Sales].[Order] WHERE [OrderID] = @OrderID"
        )

    def test_only_key_columns_skips_update(self):
        generator = AutoProcGenerator(parse_table_definition("CREATE TABLE Tag ([Name] [varchar](50) NOT NULL)"), ["Name"])

        statements = generator.generate(directive("update", "upsert", "delete", table="dbo.tag"))

        assert len(statements) == 1
        assert statements[0].startswith("CREATE PROCEDURE [dbo].[DeleteTag]")


class TestColumnTypes:
    """Test handling of special column types."""

    TABLE = (
        "CREATE TABLE Beer ([ID] [int] NOT NULL, [Stuff] [xml] NULL, "
        "[ChangeDate] [rowversion], [Total] AS ([ID] * 2))"
    )

    def test_find_skips_non_comparable_and_computed(self):
        generator = AutoProcGenerator(parse_table_definition(self.TABLE), ["ID"])

        (sql,) = generator.generate(directive("find"))

        assert "@Stuff" not in sql
        assert "@Total" not in sql
        assert "@ChangeDate binary(8) = NULL" in sql

    def test_insert_skips_rowversion_and_computed(self):
        generator = AutoProcGenerator(parse_table_definition(self.TABLE), ["ID"])

        (sql,) = generator.generate(directive("insert"))

        assert "INSERT INTO [dbo].[Beer] ([ID], [Stuff])" in sql
