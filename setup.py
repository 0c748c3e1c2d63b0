from setuptools import setup, find_packages

setup(
    name='eksforge',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'boto3',
        'botocore',
        'pydantic',
        'pyyaml',
        'jsonschema',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ]
    },
    entry_points={
        'console_scripts': [
            'eksforge=eksforge.cli:run'
        ]
    },
    author='Your Name',
    description='CLI and API for provisioning EKS clusters from flags or cluster config files',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
