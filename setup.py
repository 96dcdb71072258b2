from setuptools import setup

setup(
    name='stack-reconciler-scripts',
    version='1.0.0',
    description='CloudFormation stack lifecycle reconciliation and deployment scripts',
    py_modules=[
        'stack_status',
        'stack_provider',
        'stack_reconciler',
        'cloudformation_provider',
        'config_parser',
        'monitoring',
        'rollout_stage',
        'deploy_single',
        'rollback_stage',
        'cleanup_stage',
        'validation',
        'validation_stage',
    ],
    python_requires='>=3.9',
    install_requires=[
        'boto3>=1.28.0',
        'PyYAML>=6.0',
        'jsonschema>=4.19.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.4.0',
            'hypothesis>=6.88.0',
            'moto[cloudformation,s3]>=5.0.0',
            'mypy>=1.5.0',
            'types-PyYAML>=6.0.0',
        ],
    },
)
