"""
VideoSubtitler — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .[test]

    # Command-line entry point:
    video-subtitler run movie.mp4
"""

from setuptools import setup

APP_NAME = "video-subtitler"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Video to time-aligned, translated SRT/VTT subtitles",
    packages=[
        "subtitler",
        "subtitler.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "video-subtitler=main:main",
        ],
    },
)
