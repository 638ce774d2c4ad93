import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from config.settings import settings
from models.schemas import UploadCandidate
from services.clam_av import ClamAVService, build_antivirus_scanner
from services.rejection_messages import localized_message
from utils.logger import get_logger
from workflows.upload_validation import UploadValidationWorkflow

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upload security validation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="run the upload validation pipeline on a file")
    validate.add_argument("file", help="path of the uploaded file")
    validate.add_argument("--category", default="image", help="upload category (image, document, audio, ...)")
    validate.add_argument("--name", default=None, help="client filename (defaults to the file's name)")
    validate.add_argument("--declared-mime", default=None, help="client-declared content type")
    validate.add_argument("--locale", default=settings.DEFAULT_LOCALE, help="locale for rejection messages")

    subparsers.add_parser("health", help="check the ClamAV daemon")
    return parser


def run_validate(args: argparse.Namespace, workflow: Optional[UploadValidationWorkflow] = None) -> int:
    path = Path(args.file)
    candidate = UploadCandidate(
        source=path,
        filename=args.name or path.name,
        category=args.category,
        declared_mime=args.declared_mime,
    )
    result = (workflow or UploadValidationWorkflow()).validate(candidate)

    output = result.model_dump(mode="json")
    if not result.accepted:
        output["user_message"] = localized_message(result.kind, args.locale, result.detail)
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0 if result.accepted else 1


def run_health() -> int:
    scanner = build_antivirus_scanner(settings)
    if not isinstance(scanner, ClamAVService):
        print(json.dumps({"service": "clamav", "healthy": False, "error": "scanning disabled"}, indent=2))
        return 1
    report = scanner.health_check()
    print(json.dumps(report, indent=2))
    return 0 if report["healthy"] else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "validate":
        return run_validate(args)
    return run_health()


if __name__ == "__main__":
    sys.exit(main())
