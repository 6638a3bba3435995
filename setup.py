from setuptools import setup, find_packages

package_name = 'pose_stream_client'

setup(
    name=package_name.replace('_', '-'),
    version='1.0.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.9',
    install_requires=[
        'setuptools',
        'websockets>=14.0',
        'numpy>=1.24',
        'opencv-python>=4.8',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
            'pytest-asyncio>=0.23',
        ],
    },
    zip_safe=True,
    maintainer='Hasan Çoban',
    maintainer_email='hasancoban@std.iyte.edu.tr',
    description='Streaming session client for remote pose estimation',
    license='MIT',
    entry_points={
        'console_scripts': [
            'pose-stream = pose_stream_client.main:main',
        ],
    },
)
