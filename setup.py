from setuptools import setup, find_packages
import os

# Function to read the requirements.txt file
def parse_requirements(filename="requirements.txt"):
    """Load requirements from a pip requirements file."""
    try:
        with open(os.path.join(os.path.dirname(__file__), filename), 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    except IOError:
        # No pinned requirements file: fall back to the runtime stack.
        return [
            "numpy>=1.20",    # Trend regression, exponential math
            "pandas>=1.3",    # Exponential smoothing of the glucose series
            "PyYAML>=5.4",    # Preferences and learning store
        ]

# Read long description from README.md if it exists
try:
    with open(os.path.join(os.path.dirname(__file__), 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = (
        'Closed-loop insulin dosing engine with a read-only observational '
        'learning loop that scores meal episodes.'
    )

setup(
    name="dialoop",
    version="1.0.0",
    author="DiaLoop Team",
    description="Closed-loop insulin dosing decisions with episode-based observational learning",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(where=".", include=['DiaLoop', 'DiaLoop.*']),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.8",
    install_requires=parse_requirements(),
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
        ],
    },
    include_package_data=True,
    keywords=[
        "diabetes",
        "closed loop",
        "insulin dosing",
        "continuous glucose monitoring",
        "automated insulin delivery",
    ],
)
