from pathlib import Path

phy_data_folder = Path(__file__).parent / "test_data"
