"""Setup script for the faceprobe package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read README if it exists
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="faceprobe",
    version="0.1.0",
    description="Face region sampling, noise residual extraction and authenticity scoring for images and video",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="faceprobe Team",
    packages=find_packages(exclude=["tests*", "docs*"]),
    python_requires=">=3.9",
    install_requires=[
        "insightface>=0.7.3",
        "onnxruntime>=1.16.3",
        "opencv-python>=4.9.0",  # cv2.FaceDetectorYN requires >= 4.5.4
        "numpy>=1.26.0",
        "pandas>=2.2.0",
        "tqdm>=4.66.0",
        "pyyaml>=6.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black",
            "flake8",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "faceprobe-extract=scripts.extract_faces:main",
            "faceprobe-analyze=scripts.analyze_media:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
