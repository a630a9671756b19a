import unittest

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from pydantic import ValidationError

from crudspec.core.errors import (
    ColumnValidationError,
    ConfigurationError,
    FieldError,
    ModelNotFoundError,
    QueryCompileError,
    StructuralError,
    to_http_exception,
)
from crudspec.schemas.query import QueryOptions
from crudspec.services.model_registry import ModelRegistry


class ErrorTypeTests(unittest.TestCase):
    def test_hierarchy(self):
        self.assertTrue(issubclass(StructuralError, QueryCompileError))
        self.assertTrue(issubclass(ConfigurationError, FieldError))
        self.assertTrue(issubclass(ColumnValidationError, ValueError))

    def test_column_validation_message(self):
        exc = ColumnValidationError(["ghost", "secret"], location="filter, sort")
        self.assertEqual(exc.invalid_columns, ["ghost", "secret"])
        self.assertEqual(exc.location, "filter, sort")
        self.assertEqual(str(exc), "in filter, sort: invalid columns: ghost, secret")
        self.assertEqual(str(ColumnValidationError(["x"])), "invalid columns: x")

    def test_field_error_keeps_column(self):
        self.assertEqual(FieldError("bad", column="title").column, "title")


class HttpMappingTests(unittest.TestCase):
    def test_status_codes(self):
        self.assertEqual(to_http_exception(ModelNotFoundError("no model 'x'")).status_code, 404)
        mapped = to_http_exception(StructuralError("no sort columns defined"))
        self.assertEqual((mapped.status_code, mapped.detail), (400, "no sort columns defined"))
        self.assertEqual(to_http_exception(QueryCompileError()).detail, "Invalid query")
        mapped = to_http_exception(RuntimeError("db password leaked"))
        self.assertEqual((mapped.status_code, mapped.detail), (500, "Query compilation failed"))

    def test_invalid_options_map_to_bad_request(self):
        with self.assertRaises(ValidationError) as ctx:
            QueryOptions(cursor_forward="1", cursor_backward="2")
        mapped = to_http_exception(ctx.exception)
        self.assertEqual(mapped.status_code, 400)
        self.assertIn("mutually exclusive", mapped.detail)

    def test_http_exception_passes_through(self):
        original = HTTPException(status_code=409, detail="conflict")
        self.assertIs(to_http_exception(original), original)

    def test_exception_handler(self):
        app = FastAPI()
        registry = ModelRegistry()

        @app.exception_handler(QueryCompileError)
        @app.exception_handler(ModelNotFoundError)
        async def _handle(request, exc):
            mapped = to_http_exception(exc)
            return JSONResponse(status_code=mapped.status_code, content={"detail": mapped.detail})

        @app.get("/models/{name}")
        def _describe(name: str):
            return {"table": registry.metadata(name).table_name}

        @app.get("/broken")
        def _broken():
            raise ColumnValidationError(["ghost"], location="sort")

        client = TestClient(app)
        response = client.get("/models/ghosts")
        self.assertEqual(response.status_code, 404)
        response = client.get("/broken")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "in sort: invalid columns: ghost")


if __name__ == "__main__":
    unittest.main()
