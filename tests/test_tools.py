"""
Tests for tool argument construction.
"""

from pathlib import Path

from docseal_backend.models import DocumentMetadata
from docseal_backend.tools import ToolCommands, generate_owner_credential, metadata_arguments


class TestMetadataArguments:
    def test_basic_and_xmp_mapping(self):
        metadata = DocumentMetadata(
            basic={"title": "Report", "author": "Ops", "description": "Q3 figures"},
            xmp={"creator": "Finance", "rights": "Internal"},
        )
        assert metadata_arguments(metadata) == [
            "-Title=Report",
            "-Author=Ops",
            "-Subject=Q3 figures",
            "-XMP-dc:Creator=Finance",
            "-XMP-dc:Rights=Internal",
        ]

    def test_keywords_expand_per_item(self):
        metadata = DocumentMetadata(basic={"keywords": ["pdf", "", "finance"]})
        assert metadata_arguments(metadata) == ["-Keywords=pdf", "-Keywords=finance"]

    def test_empty_fields_are_omitted(self):
        metadata = DocumentMetadata(basic={"title": "  ", "author": None, "keywords": []})
        assert metadata_arguments(metadata) == []

    def test_exif_namespace_is_not_written(self):
        assert metadata_arguments(DocumentMetadata(exif={"make": "Canon", "gps": "1,2"})) == []

    def test_unmapped_basic_fields_are_ignored(self):
        assert metadata_arguments(DocumentMetadata(basic={"pages": 3})) == []


class TestToolCommands:
    def test_sanitize(self):
        invocation = ToolCommands().sanitize(Path("/s/in.pdf"), Path("/s/in.sanitized.pdf"))
        assert invocation.tool == "sanitize"
        assert invocation.args[0] == "gs"
        assert "-sDEVICE=pdfwrite" in invocation.args
        assert "-sOutputFile=/s/in.sanitized.pdf" in invocation.args
        assert invocation.args[-1] == "/s/in.pdf"

    def test_write_metadata_edits_in_place(self):
        invocation = ToolCommands(metadata_writer="/usr/bin/exiftool").write_metadata(Path("/s/a.pdf"), ["-Title=A"])
        assert invocation.args == ["/usr/bin/exiftool", "-overwrite_original", "-q", "-Title=A", "/s/a.pdf"]

    def test_encrypt(self):
        invocation = ToolCommands().encrypt(Path("/s/a.pdf"), Path("/s/a.encrypted.pdf"), "owner-secret")

        assert invocation.tool == "encrypt"
        assert invocation.args[:5] == ["qpdf", "--encrypt", "", "owner-secret", "256"]
        for restriction in ("--modify=none", "--extract=n", "--annotate=n"):
            assert restriction in invocation.args
        assert invocation.args[-3:] == ["--", "/s/a.pdf", "/s/a.encrypted.pdf"]
        assert "owner-secret" in invocation.secrets
        assert "owner-secret" not in invocation.redacted()


class TestOwnerCredential:
    def test_fresh_and_long(self):
        first, second = generate_owner_credential(), generate_owner_credential()
        assert first != second
        assert len(first) >= 40
