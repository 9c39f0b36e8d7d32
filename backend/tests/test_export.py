from conftest import button_annotation
from skema_daemon.core_models import Annotation, AnnotationStatus, StoredAnnotation
from skema_daemon.export import EXPORT_VERSION, build_export, export_dict


def _record(annotation, comment="", status=AnnotationStatus.PENDING):
    return StoredAnnotation(annotation=annotation, comment=comment, status=status,
                            created_at="2024-01-01T00:00:00+00:00")


def test_dom_selection_gets_required_keys():
    sparse = Annotation(id="ann-1", type="dom_selection", selector="#cta")
    doc = export_dict(build_export([_record(sparse, "Bigger")]))

    assert doc["version"] == EXPORT_VERSION
    [ann] = doc["annotations"]
    assert ann["selector"] == "#cta"
    assert ann["tagName"] == "" and ann["elementPath"] == "" and ann["text"] == ""
    assert ann["boundingBox"] == {"x": 0.0, "y": 0.0, "width": 0.0, "height": 0.0}
    assert ann["timestamp"] == 1704067200000
    assert ann["comment"] == "Bigger"


def test_drawing_keeps_its_metadata():
    drawing = Annotation(id="ann-2", type="drawing", drawing_svg="<svg/>", extracted_text="Login",
                         bounding_box={"x": 1, "y": 2, "width": 3, "height": 4}, timestamp=5)
    [ann] = export_dict(build_export([_record(drawing)]))["annotations"]
    assert ann["type"] == "drawing"
    assert ann["drawingSvg"] == "<svg/>"
    assert ann["extractedText"] == "Login"
    assert "tagName" not in ann
    assert "comment" not in ann


def test_status_filter_and_page_context():
    first = _record(button_annotation(id="a", pathname="/one"))
    second = _record(button_annotation(id="b", pathname="/two"), status=AnnotationStatus.RESOLVED)

    doc = build_export([first, second])
    assert doc.pathname == "/two"
    assert [a.id for a in doc.annotations] == ["a", "b"]

    resolved = build_export([first, second], status=AnnotationStatus.RESOLVED, pathname="/override")
    assert [a.id for a in resolved.annotations] == ["b"]
    assert resolved.pathname == "/override"
