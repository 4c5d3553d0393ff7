"""
Main Entry Point for the Handwritten Digit Reader
Provides the command-line interface for recognition and model training
"""

import argparse
import json
import logging
import os
import sys

from .classifier import LocalModelStore, ModelCache
from .config import get_settings, setup_logging
from .errors import HandwritingError
from .pipeline import HandwritingRecognizer, ProgressUpdate, confidence_label
from .validation import validate_image_file

logger = logging.getLogger("digit_reader")


def _log_progress(update: ProgressUpdate) -> None:
    logger.info("[%3d%%] %s", int(update.progress), update.status)


def recognize_image(cache, image_path, expected_digits=None, as_json=False, save_preprocessed=None):
    """Recognise the digits in an image file and print the result. Returns an exit code."""
    size = os.path.getsize(image_path)
    check = validate_image_file(os.path.basename(image_path), size)
    if not check.valid:
        print(f"Error: {check.error}")
        return 1

    with open(image_path, 'rb') as handle:
        data = handle.read()

    recognizer = HandwritingRecognizer(cache)
    result = recognizer.recognize(data, progress=_log_progress, expected_digits=expected_digits)

    if save_preprocessed:
        with open(save_preprocessed, 'wb') as handle:
            handle.write(result.preprocessed_png())
        logger.info("Preprocessed image written to %s", save_preprocessed)

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print(f"Recognized number: {result.combined_text}")
    print(f"Detected digits: {len(result.digits)}")
    print(f"Avg. confidence: {result.average_confidence:.1f}%")
    print(f"Processing time: {result.processing_time_ms / 1000:.2f}s")
    print("Individual predictions:")
    for i, digit in enumerate(result.digits):
        label = confidence_label(digit.confidence)
        shown = digit.digit if digit.digit >= 0 else '?'
        print(f"  Digit {i+1}: {shown} (confidence: {digit.confidence:.1f}%, {label}) at {digit.bbox.as_tuple()}")
    return 0


def retrain(cache):
    """Discard any stored model, then train and persist a fresh one"""
    cache.dispose()
    cache.store.delete(cache.key)
    handle = cache.ensure_model_ready()
    print(f"Model '{handle.key}' trained ({handle.source})")
    return 0


def check_dependencies():
    """Check if all required dependencies are installed"""
    required_packages = ['cv2', 'numpy', 'PIL', 'tensorflow', 'sklearn', 'requests', 'tqdm']

    missing_packages = []
    for package in required_packages:
        try:
            __import__(package)
            print(f"✓ {package}")
        except ImportError:
            missing_packages.append(package)
            print(f"✗ {package} - MISSING")

    if missing_packages:
        print(f"\nMissing packages: {missing_packages}")
        print("Please install missing packages using: pip install <package_name>")
        return False
    print("\nAll dependencies are installed!")
    return True


def main(argv=None):
    """Main function with command line interface"""
    parser = argparse.ArgumentParser(description="Handwritten Digit Reader")
    parser.add_argument('--image', type=str, help='Recognise the digits in an image file')
    parser.add_argument('--expected-digits', type=int, default=None,
                        help='Split the image into this many equal columns instead of detecting digits')
    parser.add_argument('--json', action='store_true', help='Print the result as JSON')
    parser.add_argument('--save-preprocessed', type=str, help='Write the preprocessed image as PNG')
    parser.add_argument('--train', action='store_true', help='Discard the stored model and train a new one')
    parser.add_argument('--dispose-after', action='store_true', help='Release the model after recognition')
    parser.add_argument('--model-dir', type=str, help='Directory of the model store')
    parser.add_argument('--check-deps', action='store_true', help='Check if all dependencies are installed')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.check_deps:
        return 0 if check_dependencies() else 1

    settings = get_settings(model_dir=args.model_dir)
    cache = ModelCache(store=LocalModelStore(settings.model_dir), settings=settings)

    try:
        if args.train:
            status = retrain(cache)
            if not args.image:
                return status

        if args.image:
            if not os.path.exists(args.image):
                print(f"Error: Image file {args.image} not found")
                return 1
            status = recognize_image(cache, args.image, args.expected_digits, args.json, args.save_preprocessed)
            if args.dispose_after:
                cache.dispose()
            return status
    except (HandwritingError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
