import pytest

from app import create_app
from config import OCR_MODEL, SOLVER_MODEL
from inference import InferenceBinding

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="


_UNSET = object()


class FakeBinding(InferenceBinding):
    """Records every call and answers with canned replies."""

    def __init__(self, ocr=_UNSET, solution=_UNSET, license_error=None, ocr_error=None, solve_error=None):
        self.ocr = ocr if ocr is not _UNSET else {"response": "RAW_TEXT:\nfoo"}
        self.solution = solution if solution is not _UNSET else {"response": "Final Answer: 42"}
        self.license_error = license_error
        self.ocr_error = ocr_error
        self.solve_error = solve_error
        self.calls = []

    def run(self, model, inputs):
        self.calls.append((model, inputs))
        if inputs.get('prompt') == "agree":
            if self.license_error:
                raise self.license_error
            return {"response": "I agree"}
        if model == OCR_MODEL:
            if self.ocr_error:
                raise self.ocr_error
            return self.ocr
        if model == SOLVER_MODEL:
            if self.solve_error:
                raise self.solve_error
            return self.solution
        raise AssertionError(f"unexpected model {model}")

    def calls_for(self, model):
        return [inputs for called, inputs in self.calls if called == model and 'messages' in inputs]


@pytest.fixture
def binding():
    return FakeBinding()


@pytest.fixture
def app(binding):
    app = create_app(binding=binding)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
