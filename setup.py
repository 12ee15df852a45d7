import setuptools
import os

own_dir = os.path.abspath(os.path.dirname(__file__))


def requirements():
    with open(os.path.join(own_dir, 'requirements.txt')) as f:
        for line in f.readlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            yield line


def modules():
    return [
        'http_requests',
    ]


def version():
    with open(os.path.join(own_dir, 'VERSION')) as f:
        return f.read().strip()


setuptools.setup(
    name='image-mirror',
    version=version(),
    description='mirror container images (release-payloads, operators, additional images)',
    python_requires='>=3.12',
    py_modules=modules(),
    packages=['oci', 'mirror'],
    install_requires=list(requirements()),
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'image-mirror = mirror.__main__:main',
        ],
    },
)
