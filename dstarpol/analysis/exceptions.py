"""
Custom exceptions for the D*+ polarization analysis

All custom exceptions inherit from AnalysisError, so callers can catch
every analysis-specific failure with a single except clause.
"""


class AnalysisError(Exception):
    """Base exception for all analysis errors."""
    pass


class ConfigurationError(AnalysisError):
    """
    Raised when the YAML configuration is invalid or incomplete

    Examples:
    - Missing cut section
    - pT-bin limits not strictly increasing
    - Classifier thresholds not matching the pT binning
    """
    pass


class DataLoadError(AnalysisError):
    """
    Raised when an input file cannot be read

    Examples:
    - No candidate tree in the ROOT file
    - Jagged branches with inconsistent lengths
    """
    pass


class BranchMissingError(DataLoadError):
    """Raised when a required branch is not found in the input tree."""

    def __init__(self, branch_name: str, file_path: str = None):
        self.branch_name = branch_name
        self.file_path = file_path

        message = f"Required branch '{branch_name}' not found"
        if file_path:
            message += f" in file: {file_path}"

        super().__init__(message)


class KinematicsError(AnalysisError):
    """
    Raised when the rest-frame angular observables are undefined

    Examples:
    - Mother transverse momentum or momentum equal to zero
    - Soft daughter at rest in the mother rest frame
    """
    pass
