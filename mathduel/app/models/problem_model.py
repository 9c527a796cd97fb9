from sqlalchemy import Column, Integer, String, Text, Boolean, Float
from mathduel.app.core.database import Base

class Problem(Base):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, default="")
    statement = Column(Text, nullable=False)
    answer = Column(String, nullable=True)
    answer_type = Column(String, nullable=True) # exact, numeric, fraction
    difficulty = Column(Float, nullable=True) # 1..10
    rating = Column(Integer, nullable=True)
    category = Column(String, nullable=True, index=True)
    is_published = Column(Boolean, default=True)
