from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


INFO_TYPES: tuple[str, ...] = (
    "name",
    "description",
    "requirements",
    "materials",
    "location",
    "preparation",
    "schedule",
    "instructor",
    "syllabus",
    "homework",
    "all",
)


@dataclass(frozen=True, slots=True)
class ClassInfo:
    name: str
    description: str
    requirements: str
    materials: str
    location: str
    preparation: str
    schedule: str
    instructor: str
    syllabus: str
    homework: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


_ONLINE_CODING_MATERIALS = (
    "Laptop with internet connection, code editor (VS Code recommended), notebook for taking notes"
)
_ONLINE_CODING_PREP = (
    "Please ensure your laptop is charged and you have a stable internet connection. "
    "Review any pre-class materials sent via email"
)
_WEB_SYLLABUS = (
    "Week 1-2: HTML/CSS basics, Week 3-4: JavaScript fundamentals, Week 5-6: Building your first web app"
)

CLASS_CATALOG: dict[str, ClassInfo] = {
    "Programming Proficiency": ClassInfo(
        name="Programming Proficiency",
        description="Learn the basics of programming and build your first web app",
        requirements="Basic computer literacy, willingness to learn coding fundamentals",
        materials=_ONLINE_CODING_MATERIALS,
        location="Online via Zoom - link will be sent 30 minutes before class",
        preparation=_ONLINE_CODING_PREP,
        schedule="Mondays and Wednesdays, 10:00 AM - 12:00 PM",
        instructor="Sarah Johnson - Senior Software Developer with 8 years experience",
        syllabus=_WEB_SYLLABUS,
        homework="Weekly coding exercises and one final project to build a personal website",
    ),
    "Data Science Fundamentals": ClassInfo(
        name="Data Science Fundamentals",
        description="Learn the basics of data science and build your first data analysis project",
        requirements="Basic math skills, curiosity about data analysis",
        materials="Computer with Python installed, Jupyter notebooks, calculator",
        location="Hybrid - Room 205 or online option available",
        preparation="Install Python and Jupyter notebooks using our setup guide",
        schedule="Tuesdays and Thursdays, 2:00 PM - 4:00 PM",
        instructor="Dr. Michael Chen - Data Science PhD with industry experience",
        syllabus="Statistics basics, Python for data analysis, visualization, machine learning intro",
        homework="Data analysis projects using real-world datasets",
    ),
    "Digital Marketing Essentials": ClassInfo(
        name="Digital Marketing Essentials",
        description="Learn the basics of digital marketing and build your first social media campaign",
        requirements="Interest in marketing, basic computer skills",
        materials="Laptop, access to social media accounts for practice",
        location="Conference Room A, Building 2",
        preparation="Think about brands you follow and what makes their marketing effective",
        schedule="Fridays, 1:00 PM - 5:00 PM",
        instructor="Lisa Rodriguez - Marketing Director with 10+ years experience",
        syllabus="Social media strategy, content creation, analytics, email marketing",
        homework="Create marketing campaigns for fictional products",
    ),
    "Fullstack Development Bootcamp": ClassInfo(
        name="Fullstack Development Bootcamp",
        description="Learn to build web applications from scratch",
        requirements="Basic computer literacy, willingness to learn coding fundamentals",
        materials=_ONLINE_CODING_MATERIALS,
        location="Online via Zoom - link will be sent 30 minutes before class",
        preparation=_ONLINE_CODING_PREP,
        schedule="Mondays and Wednesdays, 10:00 AM - 12:00 PM",
        instructor=(
            "Callum Bir - Senior Software Developer with more than 20 years experience "
            "of integrating AI into his work"
        ),
        syllabus=_WEB_SYLLABUS,
        homework="Weekly coding exercises and one final project to build a personal website",
    ),
}


def lookup_class(class_name: str) -> ClassInfo:
    """Known classes come from the catalog; anything else gets placeholder details."""
    known = CLASS_CATALOG.get(class_name)
    if known is not None:
        return known
    return ClassInfo(
        name=class_name,
        description="No information available for this class",
        requirements="Will be provided by your instructor",
        materials="Material list will be sent before class starts",
        location="Location details will be confirmed closer to class date",
        preparation="Preparation instructions will be emailed to you",
        schedule="Schedule confirmed in your enrollment confirmation",
        instructor="Instructor information will be provided soon",
        syllabus="Detailed syllabus available on the student portal",
        homework="Assignment details will be covered in the first class",
    )


_TEMPLATES: dict[str, str] = {
    "name": "The name of the class is: {value}",
    "description": "The description of the class is: {value}",
    "requirements": "For {cls}, the requirements are: {value}",
    "materials": "For {cls}, you'll need: {value}",
    "location": "{cls} will be held at: {value}",
    "preparation": "To prepare for {cls}: {value}",
    "schedule": "{cls} meets: {value}",
    "instructor": "Your {cls} instructor is: {value}",
    "syllabus": "The {cls} syllabus covers: {value}",
    "homework": "For {cls} homework: {value}",
}


def describe(info_type: str, class_name: str) -> tuple[str, dict[str, Any]]:
    """
    Returns (spoken answer, structured details) for one info type.
    """
    info = lookup_class(class_name)
    if info_type == "all":
        text = (
            f"Here's complete information for {class_name}: Location: {info.location}. "
            f"Materials needed: {info.materials}. Schedule: {info.schedule}. "
            f"Instructor: {info.instructor}."
        )
        return text, info.as_dict()

    template = _TEMPLATES.get(info_type)
    if template is None:
        text = (
            "I can provide information about requirements, materials, location, preparation, "
            f"schedule, instructor, syllabus, or homework for {class_name}. "
            "What specifically would you like to know?"
        )
        return text, {"available": list(info.as_dict().keys())}

    value = getattr(info, info_type)
    return template.format(cls=class_name, value=value), {info_type: value}
