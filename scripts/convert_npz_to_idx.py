#!/usr/bin/env python3
"""
Convert an MNIST NPZ archive to the IDX files the training service reads.

The archive must contain ``train_images``, ``train_labels``, ``test_images``
and ``test_labels`` arrays. Images may be stored as floats in [0, 1] or as
0-255 integers, either flat (N, 784) or square (N, 28, 28).

Usage:
    python scripts/convert_npz_to_idx.py [path/to/mnist.npz] [output_dir]

The script will:
1. Load the NPZ archive
2. Write train/test image and label files in IDX format
3. Verify the written files decode back to the same data
"""

import os
import sys
from typing import Dict, Tuple

import numpy as np

from digitnet.config import (
    TEST_IMAGES_FILE,
    TEST_LABELS_FILE,
    TRAIN_IMAGES_FILE,
    TRAIN_LABELS_FILE,
)
from digitnet.idx import IDXSequence, write_idx

SPLITS = {
    'train': (TRAIN_IMAGES_FILE, TRAIN_LABELS_FILE),
    'test': (TEST_IMAGES_FILE, TEST_LABELS_FILE),
}


def to_image_bytes(images: np.ndarray) -> np.ndarray:
    """
    Normalize an image array to uint8 with shape (N, 28, 28).

    Parameters:
    -----------
    images : np.ndarray
        Float images in [0, 1] or integer images in [0, 255]

    Returns:
    --------
    np.ndarray
        uint8 array of shape (N, 28, 28)
    """
    if np.issubdtype(images.dtype, np.floating):
        images = np.rint(np.clip(images, 0.0, 1.0) * 255)
    return images.astype(np.uint8).reshape(len(images), 28, 28)


def load_npz(filepath: str) -> Dict[str, Tuple[np.ndarray, np.ndarray]]:
    """
    Load train and test splits from an NPZ archive.

    Returns:
    --------
    dict
        {'train': (images, labels), 'test': (images, labels)}
    """
    print(f"📂 Loading MNIST archive from: {filepath}")

    with np.load(filepath) as data:
        splits = {
            name: (to_image_bytes(data[f'{name}_images']),
                   data[f'{name}_labels'].astype(np.uint8).reshape(-1))
            for name in SPLITS
        }

    for name, (images, labels) in splits.items():
        print(f"   - {name}: {len(images)} images, {len(labels)} labels")
    return splits


def save_as_idx(splits: Dict[str, Tuple[np.ndarray, np.ndarray]], output_dir: str) -> None:
    """Write every split as an IDX image file and an IDX label file."""
    print(f"\n💾 Writing IDX files to: {output_dir}")
    os.makedirs(output_dir, exist_ok=True)

    for name, (images, labels) in splits.items():
        images_file, labels_file = SPLITS[name]
        with open(os.path.join(output_dir, images_file), 'wb') as f:
            write_idx(f, images)
        with open(os.path.join(output_dir, labels_file), 'wb') as f:
            write_idx(f, labels)
        print(f"✅ Wrote {images_file} and {labels_file}")


def verify_conversion(splits: Dict[str, Tuple[np.ndarray, np.ndarray]], output_dir: str) -> bool:
    """Decode the written files and compare them with the source arrays."""
    print(f"\n🔍 Verifying conversion...")

    for name, (images, labels) in splits.items():
        images_file, labels_file = SPLITS[name]
        with IDXSequence.open(os.path.join(output_dir, images_file),
                              os.path.join(output_dir, labels_file)) as sequence:
            count = 0
            for index, record in enumerate(sequence):
                assert record.image_bytes == images[index].tobytes(), \
                    f"{name} image {index} doesn't match!"
                assert record.label == labels[index], \
                    f"{name} label {index} doesn't match!"
                count += 1
        assert count == len(images), f"{name}: decoded {count} of {len(images)} records"

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    """Main conversion function."""
    print("=" * 60)
    print("MNIST Data Format Converter")
    print("NPZ archive → IDX files")
    print("=" * 60)

    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    default_dir = os.path.join(project_root, 'data')

    npz_path = sys.argv[1] if len(sys.argv) > 1 else os.path.join(default_dir, 'mnist.npz')
    output_dir = sys.argv[2] if len(sys.argv) > 2 else default_dir

    if not os.path.exists(npz_path):
        print(f"❌ Error: Archive not found: {npz_path}")
        sys.exit(1)

    try:
        splits = load_npz(npz_path)
        save_as_idx(splits, output_dir)
        verify_conversion(splits, output_dir)

        print("\n" + "=" * 60)
        print("✅ CONVERSION COMPLETE!")
        print("=" * 60)
        print(f"\n📝 Next steps:")
        print(f"   1. Start the server: DIGITNET_DATA_DIR={output_dir} python -m digitnet.api_server")
        print(f"   2. Run tests: pytest")

    except Exception as e:
        print(f"\n❌ Error during conversion: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
